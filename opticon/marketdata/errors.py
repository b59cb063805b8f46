"""Exception types shared by the market-data layers."""

from __future__ import annotations


class SymbolValidationError(ValueError):
    """Malformed, empty or oversized symbol list. Maps to HTTP 400."""


class UpstreamError(Exception):
    """A single upstream call failed after the executor gave up on it."""

    retryable = True

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class UpstreamTimeout(UpstreamError):
    """The call did not complete within its deadline and was cancelled."""


class UpstreamTransportError(UpstreamError):
    """Connection reset/refused or another transport-level failure."""


class UpstreamHTTPError(UpstreamError):
    def __init__(
        self,
        status_code: int,
        body: str = "",
        *,
        provider: str | None = None,
        retryable: bool = True,
    ) -> None:
        message = f"HTTP {status_code}"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.body = body
        self.retryable = retryable


class UpstreamProtocolError(UpstreamError):
    """The exchange broke at the HTTP layer (undecodable body, redirect loop)."""

    retryable = False


class MalformedPayloadError(UpstreamError):
    """The response arrived but could not be parsed into quotes."""

    retryable = False


class AggregationError(Exception):
    """Every provider and the stale cache came back empty."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
