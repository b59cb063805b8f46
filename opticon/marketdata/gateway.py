"""Canonical quote gateway with provider fallback, gap filling and stale-on-error cache.

All HTTP endpoints consume market data through this module.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

import httpx

from opticon.config import Settings
from opticon.marketdata.cache import MemoryQuoteCache, QuoteCache, RedisQuoteCache
from opticon.marketdata.errors import (
    AggregationError,
    SymbolValidationError,
    UpstreamError,
    UpstreamTimeout,
)
from opticon.marketdata.executor import RetryExecutor
from opticon.marketdata.models import AggregateResult, DataSource, DataStatus, Quote
from opticon.marketdata.providers import (
    FmpBatchProvider,
    ProviderResult,
    QuoteProvider,
    YahooChartProvider,
)
from opticon.marketdata.symbols import NO_SYMBOLS, SymbolCodec, cache_key

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "APIs did not respond in time across providers"
NO_DATA_MESSAGE = "No valid data returned from any provider"


class QuoteAggregator:
    """Single entrypoint for quote lists.

    Policy per request:

    1. fresh cache entry -> served as ``cache``;
    2. primary batch provider; accepted alone when it covers at least
       ``completeness_threshold`` of the request;
    3. otherwise only the missing symbols go to the per-symbol provider and
       both result sets are merged in request order;
    4. nothing at all -> stale cache entry served as ``stale``;
    5. still nothing -> :class:`AggregationError`.

    Concurrent requests for the same symbol set share one refresh when
    ``coalesce`` is on.
    """

    def __init__(
        self,
        *,
        primary: QuoteProvider,
        secondary: QuoteProvider,
        cache: QuoteCache,
        fresh_ttl_seconds: float = 90.0,
        stale_ttl_seconds: float = 300.0,
        completeness_threshold: float = 0.5,
        coalesce: bool = True,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.cache = cache
        self.fresh_ttl_seconds = fresh_ttl_seconds
        self.stale_ttl_seconds = stale_ttl_seconds
        self.completeness_threshold = completeness_threshold
        self.coalesce = coalesce
        self._inflight: dict[str, asyncio.Future[AggregateResult]] = {}
        self._counters: dict[str, int] = {
            "requests": 0,
            "cache_hits": 0,
            "coalesced": 0,
            "primary_complete": 0,
            "secondary_fills": 0,
            "stale_served": 0,
            "failures": 0,
        }

    async def close(self) -> None:
        await self.cache.close()

    def metrics(self) -> dict[str, Any]:
        return {
            **self._counters,
            "inflight": len(self._inflight),
            "primary_enabled": self.primary.enabled,
            "cache": self.cache.stats(),
        }

    async def get_quotes(self, symbols: Sequence[str]) -> AggregateResult:
        requested = list(dict.fromkeys(symbols))
        if not requested:
            raise SymbolValidationError(NO_SYMBOLS)
        self._counters["requests"] += 1

        key = cache_key(requested)
        cached = await self.cache.get(key, self.fresh_ttl_seconds)
        if cached is not None:
            self._counters["cache_hits"] += 1
            return AggregateResult(
                quotes=_in_order(requested, cached.data),
                status=DataStatus.CACHE,
                source=cached.source,
                missing=_missing(requested, cached.data),
            )

        if not self.coalesce:
            return await self._refresh(key, requested)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, requested))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            self._counters["coalesced"] += 1

        result = await asyncio.shield(task)
        return AggregateResult(
            quotes=_in_order(requested, result.quotes),
            status=result.status,
            source=result.source,
            missing=list(result.missing),
        )

    def _forget(self, key: str, task: asyncio.Future[AggregateResult]) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    async def _refresh(self, key: str, requested: list[str]) -> AggregateResult:
        errors: list[UpstreamError] = []

        primary = await self._call(self.primary, requested)
        errors.extend(primary.errors)
        primary_quotes = primary.quotes or []

        if primary_quotes and len(primary_quotes) >= self.completeness_threshold * len(requested):
            merged = _in_order(requested, primary_quotes)
            source = DataSource.PRIMARY
            self._counters["primary_complete"] += 1
        else:
            covered = {q.symbol for q in primary_quotes}
            gap = [s for s in requested if s not in covered]
            if self.primary.enabled:
                logger.warning(
                    "%s returned %d/%d, filling %d from %s",
                    self.primary.name, len(primary_quotes), len(requested), len(gap), self.secondary.name,
                )
            secondary = await self._call(self.secondary, gap)
            errors.extend(secondary.errors)
            secondary_quotes = secondary.quotes or []
            if secondary_quotes:
                self._counters["secondary_fills"] += 1

            merged = _in_order(requested, [*primary_quotes, *secondary_quotes])
            if primary_quotes and secondary_quotes:
                source = DataSource.MIXED
            elif secondary_quotes:
                source = DataSource.SECONDARY
            else:
                source = DataSource.PRIMARY

        if not merged:
            stale = await self.cache.get(key, self.stale_ttl_seconds)
            if stale is not None:
                self._counters["stale_served"] += 1
                logger.warning("All providers empty for %s; serving stale cache entry", key)
                return AggregateResult(
                    quotes=_in_order(requested, stale.data),
                    status=DataStatus.STALE,
                    source=stale.source,
                    missing=_missing(requested, stale.data),
                )

            self._counters["failures"] += 1
            timed_out = bool(errors) and all(isinstance(e, UpstreamTimeout) for e in errors)
            message = TIMEOUT_MESSAGE if timed_out else _failure_detail(errors)
            logger.error("Quote aggregation failed for %s: %s", key, message)
            raise AggregationError(message, timed_out=timed_out)

        await self.cache.put(key, merged, source)

        missing = _missing(requested, merged)
        logger.info(
            "[QUOTE] batch_resolve target=%d final=%d source=%s missing=%d",
            len(requested), len(merged), source.value, len(missing),
        )
        return AggregateResult(quotes=merged, status=DataStatus.LIVE, source=source, missing=missing)

    async def _call(self, provider: QuoteProvider, symbols: list[str]) -> ProviderResult:
        if not symbols or not provider.enabled:
            return ProviderResult(quotes=None)
        try:
            return await provider.fetch(symbols)
        except Exception as exc:
            logger.exception("%s fetch raised unexpectedly", provider.name)
            return ProviderResult(quotes=None, errors=[UpstreamError(str(exc), provider=provider.name)])


def _failure_detail(errors: list[UpstreamError]) -> str:
    if not errors:
        return NO_DATA_MESSAGE
    return f"{NO_DATA_MESSAGE} (last error: {errors[-1]})"


def _missing(requested: Sequence[str], quotes: Sequence[Quote]) -> list[str]:
    resolved = {q.symbol for q in quotes}
    return [s for s in requested if s not in resolved]


def _in_order(requested: Sequence[str], quotes: Sequence[Quote]) -> list[Quote]:
    by_symbol: dict[str, Quote] = {}
    for q in quotes:
        by_symbol.setdefault(q.symbol, q)
    ordered = [by_symbol.pop(s) for s in requested if s in by_symbol]
    # anything the caller did not ask for keeps its original order at the end
    ordered.extend(by_symbol.values())
    return ordered


def build_cache(settings: Settings) -> QuoteCache:
    enabled = not settings.deterministic_mode
    if settings.cache_backend == "redis":
        return RedisQuoteCache.from_url(
            settings.redis_url,
            expire_seconds=int(settings.stale_ttl_seconds),
            enabled=enabled,
        )
    return MemoryQuoteCache(enabled=enabled)


def build_aggregator(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    cache: QuoteCache | None = None,
    codec: SymbolCodec | None = None,
    completeness_threshold: float | None = None,
) -> QuoteAggregator:
    """Wire providers, executor and cache from settings."""
    executor = RetryExecutor(
        timeout_seconds=settings.request_timeout_seconds,
        max_attempts=settings.max_attempts_per_provider,
        base_delay_seconds=settings.effective_retry_delay,
        deterministic=settings.deterministic_mode,
    )
    codec = codec or SymbolCodec()
    primary = FmpBatchProvider(
        api_key=settings.fmp_api_key,
        base_url=settings.fmp_base_url,
        executor=executor,
        codec=codec,
        client=client,
    )
    secondary = YahooChartProvider(
        hosts=settings.yahoo_hosts,
        executor=executor,
        codec=codec,
        client=client,
        batch_size=settings.fanout_batch_size,
        batch_delay_seconds=settings.effective_fanout_delay,
    )
    return QuoteAggregator(
        primary=primary,
        secondary=secondary,
        cache=cache if cache is not None else build_cache(settings),
        fresh_ttl_seconds=settings.cache_ttl_seconds,
        stale_ttl_seconds=settings.stale_ttl_seconds,
        completeness_threshold=(
            settings.completeness_threshold if completeness_threshold is None else completeness_threshold
        ),
        coalesce=settings.coalesce_requests,
    )
