from __future__ import annotations

import pytest

from opticon.marketdata.cache import MemoryQuoteCache, RedisQuoteCache
from opticon.marketdata.models import DataSource, normalize_quote


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.rows: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.fail = fail
        self.closed = False

    async def get(self, key: str):  # noqa: ANN201
        if self.fail:
            raise ConnectionError("redis down")
        return self.rows.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        if self.fail:
            raise ConnectionError("redis down")
        self.rows[key] = value
        self.expiry[key] = ex

    async def aclose(self) -> None:
        self.closed = True


def _quotes(*symbols: str):  # noqa: ANN202
    return [normalize_quote(s, 10.0, source=DataSource.PRIMARY, prev_close=9.0) for s in symbols]


@pytest.mark.asyncio
async def test_memory_cache_fresh_then_stale_window() -> None:
    clock = _Clock()
    cache = MemoryQuoteCache(clock=clock)
    await cache.put("AAPL,MSFT", _quotes("AAPL", "MSFT"), DataSource.MIXED)

    hit = await cache.get("AAPL,MSFT", 90)
    assert hit is not None
    assert [q.symbol for q in hit.data] == ["AAPL", "MSFT"]
    assert hit.source is DataSource.MIXED

    clock.now += 120
    assert await cache.get("AAPL,MSFT", 90) is None
    assert await cache.get("AAPL,MSFT", 300) is not None

    clock.now += 200
    assert await cache.get("AAPL,MSFT", 300) is None


@pytest.mark.asyncio
async def test_memory_cache_age_boundary_is_inclusive() -> None:
    clock = _Clock()
    cache = MemoryQuoteCache(clock=clock)
    await cache.put("K", _quotes("K"), DataSource.PRIMARY)
    clock.now += 90
    assert await cache.get("K", 90) is not None


@pytest.mark.asyncio
async def test_disabled_cache_is_a_no_op() -> None:
    cache = MemoryQuoteCache(enabled=False)
    await cache.put("K", _quotes("K"), DataSource.PRIMARY)
    assert await cache.get("K", 1_000) is None
    assert cache.stats()["entries"] == 0


@pytest.mark.asyncio
async def test_older_write_does_not_replace_newer_entry() -> None:
    clock = _Clock()
    cache = MemoryQuoteCache(clock=clock)
    await cache.put("K", _quotes("NEW"), DataSource.PRIMARY)
    clock.now -= 5
    await cache.put("K", _quotes("OLD"), DataSource.SECONDARY)
    clock.now += 5

    hit = await cache.get("K", 90)
    assert [q.symbol for q in hit.data] == ["NEW"]


@pytest.mark.asyncio
async def test_redis_cache_round_trips_entries() -> None:
    clock = _Clock()
    redis = _FakeRedis()
    cache = RedisQuoteCache(redis, expire_seconds=300, clock=clock)
    await cache.put("AAPL", _quotes("AAPL"), DataSource.SECONDARY)

    assert redis.expiry == {"opticon:quotes:AAPL": 300}
    hit = await cache.get("AAPL", 90)
    assert hit is not None
    assert hit.source is DataSource.SECONDARY
    assert hit.data[0].symbol == "AAPL"
    assert hit.data[0].change == pytest.approx(1.0)

    clock.now += 100
    assert await cache.get("AAPL", 90) is None

    await cache.close()
    assert redis.closed


@pytest.mark.asyncio
async def test_redis_outage_degrades_to_miss() -> None:
    cache = RedisQuoteCache(_FakeRedis(fail=True))
    await cache.put("AAPL", _quotes("AAPL"), DataSource.PRIMARY)
    assert await cache.get("AAPL", 90) is None


@pytest.mark.asyncio
async def test_redis_unreadable_entry_is_a_miss() -> None:
    redis = _FakeRedis()
    redis.rows["opticon:quotes:AAPL"] = "{not json"
    cache = RedisQuoteCache(redis)
    assert await cache.get("AAPL", 90) is None
