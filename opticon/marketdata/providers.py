"""Upstream quote adapters.

Every adapter exposes the same contract: ``await provider.fetch(symbols)``
returns a :class:`ProviderResult` whose ``quotes`` is ``None`` when the
provider is unusable for this request (disabled, unreachable, garbage
payload) and a possibly-partial list otherwise. Upstream failures are
recorded on the result, never raised.
"""

from __future__ import annotations

import abc
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence
from urllib.parse import quote as urlquote

import httpx

from opticon.marketdata.errors import MalformedPayloadError, UpstreamError
from opticon.marketdata.executor import RetryExecutor
from opticon.marketdata.fanout import run_chunked
from opticon.marketdata.models import DataSource, Quote, normalize_quote
from opticon.marketdata.symbols import ProviderKind, SymbolCodec

logger = logging.getLogger(__name__)

YAHOO_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Accept": "application/json",
}


@dataclass
class ProviderResult:
    quotes: list[Quote] | None
    errors: list[UpstreamError] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return self.quotes is not None


class QuoteProvider(abc.ABC):
    """Base class for upstream adapters.

    Subclasses implement ``name``, ``kind`` and ``fetch()``. The HTTP client
    is injected so one pooled client serves the whole app; without one a
    short-lived client is opened per fetch.
    """

    def __init__(
        self,
        *,
        executor: RetryExecutor,
        codec: SymbolCodec | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.executor = executor
        self.codec = codec or SymbolCodec()
        self._client = client

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider identifier used in logs and errors."""

    @property
    @abc.abstractmethod
    def kind(self) -> ProviderKind:
        """Which spelling the provider expects."""

    @property
    def enabled(self) -> bool:
        return True

    @abc.abstractmethod
    async def fetch(self, symbols: Sequence[str]) -> ProviderResult:
        """Fetch quotes for canonical ``symbols``."""

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient() as client:
            yield client


class FmpBatchProvider(QuoteProvider):
    """Financial Modeling Prep batch quote: one call for the whole list."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://financialmodelingprep.com/api/v3",
        executor: RetryExecutor,
        codec: SymbolCodec | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(executor=executor, codec=codec, client=client)
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "fmp"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.BATCH

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def fetch(self, symbols: Sequence[str]) -> ProviderResult:
        if not self.enabled:
            return ProviderResult(quotes=None)
        if not symbols:
            return ProviderResult(quotes=[])

        reverse = self.codec.reverse_map(symbols, self.kind)
        joined = ",".join(urlquote(s, safe="=.-") for s in reverse)
        url = f"{self.base_url}/quote/{joined}"

        try:
            async with self._session() as client:
                response = await self.executor.execute(
                    lambda: client.get(url, params={"apikey": self.api_key}),
                    provider=self.name,
                )
            payload = response.json()
        except UpstreamError as exc:
            logger.warning("FMP batch failed for %d symbols: %s", len(symbols), exc)
            return ProviderResult(quotes=None, errors=[exc])
        except ValueError as exc:
            logger.warning("FMP batch returned invalid JSON: %s", exc)
            return ProviderResult(quotes=None, errors=[MalformedPayloadError(str(exc), provider=self.name)])

        if not isinstance(payload, list):
            detail = payload.get("Error Message") if isinstance(payload, dict) else type(payload).__name__
            logger.warning("FMP batch payload is not a list: %s", detail)
            return ProviderResult(
                quotes=None,
                errors=[MalformedPayloadError(f"unexpected payload: {detail}", provider=self.name)],
            )

        quotes: list[Quote] = []
        seen: set[str] = set()
        for record in payload:
            quote = self._parse_record(record, reverse)
            if quote is None or quote.symbol in seen:
                continue
            seen.add(quote.symbol)
            quotes.append(quote)

        if len(quotes) < len(payload):
            logger.debug("FMP batch dropped %d partial records", len(payload) - len(quotes))
        return ProviderResult(quotes=quotes)

    def _parse_record(self, record: Any, reverse: dict[str, str]) -> Quote | None:
        if not isinstance(record, dict):
            return None
        provider_symbol = record.get("symbol")
        if not isinstance(provider_symbol, str) or not provider_symbol:
            return None
        canonical = reverse.get(provider_symbol)
        if canonical is None:
            # not something we asked for
            return None
        return normalize_quote(
            canonical,
            record.get("price"),
            source=DataSource.PRIMARY,
            change=record.get("change"),
            change_percent=record.get("changesPercentage"),
            volume=record.get("volume"),
            high=record.get("dayHigh"),
            low=record.get("dayLow"),
            open_=record.get("open"),
            prev_close=record.get("previousClose"),
            fifty_two_week_high=record.get("yearHigh"),
            fifty_two_week_low=record.get("yearLow"),
        )


class YahooChartProvider(QuoteProvider):
    """Yahoo Finance v8 chart endpoint, one call per symbol.

    Each symbol is tried against every host in order (``query1`` then the
    ``query2`` mirror) before it is given up on; the symbol list is driven
    through :func:`run_chunked` to cap concurrent requests.
    """

    def __init__(
        self,
        *,
        hosts: Sequence[str] = ("https://query1.finance.yahoo.com", "https://query2.finance.yahoo.com"),
        executor: RetryExecutor,
        codec: SymbolCodec | None = None,
        client: httpx.AsyncClient | None = None,
        batch_size: int = 10,
        batch_delay_seconds: float = 0.1,
    ) -> None:
        super().__init__(executor=executor, codec=codec, client=client)
        self.hosts = [h.rstrip("/") for h in hosts]
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds

    @property
    def name(self) -> str:
        return "yahoo"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.PER_SYMBOL

    @property
    def enabled(self) -> bool:
        return bool(self.hosts)

    async def fetch(self, symbols: Sequence[str]) -> ProviderResult:
        if not self.enabled:
            return ProviderResult(quotes=None)
        if not symbols:
            return ProviderResult(quotes=[])

        errors: list[UpstreamError] = []
        async with self._session() as client:
            results = await run_chunked(
                list(symbols),
                lambda sym: self._fetch_symbol(client, sym, errors),
                batch_size=self.batch_size,
                delay_seconds=self.batch_delay_seconds,
            )

        quotes = [q for q in results if q is not None]
        if len(quotes) < len(symbols):
            logger.info("Yahoo resolved %d/%d symbols", len(quotes), len(symbols))
        return ProviderResult(quotes=quotes, errors=errors)

    async def _fetch_symbol(
        self,
        client: httpx.AsyncClient,
        symbol: str,
        errors: list[UpstreamError],
    ) -> Quote | None:
        path = f"/v8/finance/chart/{urlquote(self.codec.to_provider(symbol, self.kind), safe='')}"

        for host in self.hosts:
            url = f"{host}{path}"
            try:
                response = await self.executor.execute(
                    lambda url=url: client.get(
                        url, params={"interval": "1d", "range": "1d"}, headers=YAHOO_HEADERS
                    ),
                    provider=f"{self.name}:{host}",
                )
            except UpstreamError as exc:
                logger.warning("Yahoo %s error for %s: %s", host, symbol, exc)
                errors.append(exc)
                continue

            quote = self._parse(symbol, response)
            if quote is not None:
                return quote
            logger.debug("Yahoo %s returned no usable chart for %s", host, symbol)
            errors.append(MalformedPayloadError(f"no usable chart for {symbol}", provider=self.name))

        return None

    @staticmethod
    def _parse(symbol: str, response: httpx.Response) -> Quote | None:
        try:
            data = response.json()
        except ValueError:
            return None

        chart = data.get("chart") if isinstance(data, dict) else None
        results = chart.get("result") if isinstance(chart, dict) else None
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return None
        meta = results[0].get("meta")
        if not isinstance(meta, dict):
            return None

        prev_close = meta.get("chartPreviousClose")
        if prev_close is None:
            prev_close = meta.get("previousClose")

        return normalize_quote(
            symbol,
            meta.get("regularMarketPrice"),
            source=DataSource.SECONDARY,
            volume=meta.get("regularMarketVolume"),
            high=meta.get("regularMarketDayHigh"),
            low=meta.get("regularMarketDayLow"),
            open_=meta.get("regularMarketOpen"),
            prev_close=prev_close,
            fifty_two_week_high=meta.get("fiftyTwoWeekHigh"),
            fifty_two_week_low=meta.get("fiftyTwoWeekLow"),
        )
