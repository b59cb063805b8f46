"""Aggregation result cache with a fresh TTL and a longer serve-stale TTL.

One store answers both questions: ``get(key, fresh_ttl)`` is "serve if
fresh", ``get(key, stale_ttl)`` on the error path is "serve if not too
stale". Entries are overwritten on every successful aggregation and only
ever expire by age at read time.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

from opticon.marketdata.models import DataSource, Quote
from opticon.utils import epoch_now

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    timestamp: float
    data: list[Quote]
    source: DataSource

    def age(self, now: float) -> float:
        return max(now - self.timestamp, 0.0)


class QuoteCache(abc.ABC):
    def __init__(self, *, enabled: bool = True, clock: Callable[[], float] = epoch_now) -> None:
        self.enabled = enabled
        self._clock = clock

    async def get(self, key: str, max_age_seconds: float) -> CacheEntry | None:
        if not self.enabled:
            return None
        entry = await self._load(key)
        if entry is None:
            return None
        if entry.age(self._clock()) > max_age_seconds:
            return None
        return entry

    async def put(self, key: str, data: list[Quote], source: DataSource) -> None:
        if not self.enabled:
            return
        await self._store(CacheEntry(key=key, timestamp=self._clock(), data=list(data), source=source))

    @abc.abstractmethod
    async def _load(self, key: str) -> CacheEntry | None:
        ...

    @abc.abstractmethod
    async def _store(self, entry: CacheEntry) -> None:
        ...

    async def close(self) -> None:
        return None

    def stats(self) -> dict[str, Any]:
        return {"backend": type(self).__name__, "enabled": self.enabled}


class MemoryQuoteCache(QuoteCache):
    """Process-local map. No capacity bound: keys are symbol lists and their
    cardinality is small in practice."""

    def __init__(self, *, enabled: bool = True, clock: Callable[[], float] = epoch_now) -> None:
        super().__init__(enabled=enabled, clock=clock)
        self._rows: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def _load(self, key: str) -> CacheEntry | None:
        async with self._lock:
            return self._rows.get(key)

    async def _store(self, entry: CacheEntry) -> None:
        async with self._lock:
            current = self._rows.get(entry.key)
            # a slower refresh must not clobber a newer one
            if current is not None and current.timestamp > entry.timestamp:
                return
            self._rows[entry.key] = entry

    def stats(self) -> dict[str, Any]:
        out = super().stats()
        out["entries"] = len(self._rows)
        return out


class RedisQuoteCache(QuoteCache):
    """Shared cache for multi-process deployments.

    Entries are JSON blobs that Redis expires after ``expire_seconds`` (the
    stale TTL); the age check still happens here. Redis outages degrade to a
    cache miss.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        *,
        prefix: str = "opticon:quotes:",
        expire_seconds: int = 300,
        enabled: bool = True,
        clock: Callable[[], float] = epoch_now,
    ) -> None:
        super().__init__(enabled=enabled, clock=clock)
        self._redis = redis_client
        self._prefix = prefix
        self._expire_seconds = max(1, int(expire_seconds))

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisQuoteCache:
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    async def _load(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._redis.get(self._prefix + key)
        except Exception as exc:
            logger.warning("Redis cache read failed for %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            quotes = [Quote.from_dict(row) for row in payload.get("data") or []]
            return CacheEntry(
                key=key,
                timestamp=float(payload["ts"]),
                data=[q for q in quotes if q is not None],
                source=DataSource(payload.get("source") or DataSource.PRIMARY.value),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            return None

    async def _store(self, entry: CacheEntry) -> None:
        blob = json.dumps(
            {
                "ts": entry.timestamp,
                "source": entry.source.value,
                "data": [q.to_dict() for q in entry.data],
            }
        )
        try:
            await self._redis.set(self._prefix + entry.key, blob, ex=self._expire_seconds)
        except Exception as exc:
            logger.warning("Redis cache write failed for %s: %s", entry.key, exc)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception:
            pass
