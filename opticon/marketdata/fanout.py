"""Controlled-concurrency fan-out over a list of independent items."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_chunked(
    items: Sequence[T],
    action: Callable[[T], Awaitable[R | None]],
    *,
    batch_size: int = 10,
    delay_seconds: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[R | None]:
    """Run ``action`` over ``items`` in consecutive concurrent batches.

    The result list is aligned with ``items``. Batch N+1 starts only after
    every call in batch N has settled, so at most ``batch_size`` calls are in
    flight. An item whose action raises resolves to ``None``. ``delay_seconds``
    is slept between batches, never after the last one.
    """
    size = max(1, int(batch_size))
    out: list[R | None] = []

    for start in range(0, len(items), size):
        batch = items[start:start + size]
        settled = await asyncio.gather(*(action(item) for item in batch), return_exceptions=True)
        for item, outcome in zip(batch, settled):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("fan-out item %r failed: %s", item, outcome)
                out.append(None)
            else:
                out.append(outcome)

        if start + size < len(items) and delay_seconds > 0:
            await sleep(delay_seconds)

    return out
