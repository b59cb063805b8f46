"""Deadline + bounded retry wrapper for a single upstream HTTP call."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from opticon.marketdata.errors import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamTransportError,
)

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[httpx.Response]]
Classifier = Callable[[httpx.Response], bool]

# Error bodies carrying these markers describe a bad request, not a flaky upstream.
_FATAL_BODY_MARKERS = ("400", "Invalid")


def is_retryable_response(response: httpx.Response) -> bool:
    """Default failure classifier for a non-2xx response."""
    body = _safe_text(response)
    if any(marker in body for marker in _FATAL_BODY_MARKERS):
        return False
    status = response.status_code
    return status == 429 or status >= 500


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text or ""
    except Exception:
        return ""


class RetryExecutor:
    """Run one upstream call with a per-attempt timeout and exponential backoff.

    Usage::

        executor = RetryExecutor(timeout_seconds=8, max_attempts=2, base_delay_seconds=0.25)
        response = await executor.execute(lambda: client.get(endpoint), provider="yahoo")

    Each attempt is wrapped in :func:`asyncio.wait_for`, so a timeout cancels
    the in-flight request. Retryable failures are timeouts, transport errors
    and 429/5xx responses; anything else (including undecodable bodies
    and redirect loops) fails immediately. When attempts are
    exhausted the last failure is raised as an :class:`UpstreamError`.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 8.0,
        max_attempts: int = 2,
        base_delay_seconds: float = 0.25,
        deterministic: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.deterministic = deterministic
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay after the given 1-based attempt."""
        if self.deterministic:
            return 0.0
        return self.base_delay_seconds * (2 ** (attempt - 1))

    async def execute(
        self,
        action: Action,
        *,
        classify: Classifier | None = None,
        provider: str | None = None,
    ) -> httpx.Response:
        classify = classify or is_retryable_response
        last_exc: UpstreamError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await asyncio.wait_for(action(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                last_exc = UpstreamTimeout(
                    f"no response within {self.timeout_seconds:g}s", provider=provider
                )
            except httpx.TimeoutException as exc:
                last_exc = UpstreamTimeout(str(exc) or "transport timeout", provider=provider)
            except httpx.TransportError as exc:
                last_exc = UpstreamTransportError(str(exc) or type(exc).__name__, provider=provider)
            except httpx.RequestError as exc:
                logger.warning("%s request failed: %s", provider or "upstream", exc)
                raise UpstreamProtocolError(str(exc) or type(exc).__name__, provider=provider) from exc
            else:
                if response.is_success:
                    return response
                retryable = classify(response)
                last_exc = UpstreamHTTPError(
                    response.status_code,
                    _safe_text(response),
                    provider=provider,
                    retryable=retryable,
                )
                if not retryable:
                    logger.warning(
                        "%s returned non-retryable HTTP %d", provider or "upstream", response.status_code
                    )
                    raise last_exc

            if attempt < self.max_attempts:
                wait = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    provider or "upstream",
                    attempt,
                    self.max_attempts,
                    last_exc,
                    wait,
                )
                if wait > 0:
                    await self._sleep(wait)

        assert last_exc is not None
        raise last_exc
