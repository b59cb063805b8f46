from __future__ import annotations

import asyncio
from urllib.parse import unquote

import httpx
import pytest

from opticon.marketdata.errors import (
    MalformedPayloadError,
    UpstreamHTTPError,
    UpstreamProtocolError,
    UpstreamTimeout,
)
from opticon.marketdata.executor import RetryExecutor
from opticon.marketdata.models import DataSource
from opticon.marketdata.providers import FmpBatchProvider, YahooChartProvider

Q1 = "https://query1.finance.yahoo.com"
Q2 = "https://query2.finance.yahoo.com"


def _executor(timeout: float = 1.0, attempts: int = 1) -> RetryExecutor:
    return RetryExecutor(timeout_seconds=timeout, max_attempts=attempts, deterministic=True)


def _chart(price: float, prev_close: float, **meta) -> dict:  # noqa: ANN003
    return {
        "chart": {
            "result": [
                {
                    "meta": {
                        "regularMarketPrice": price,
                        "chartPreviousClose": prev_close,
                        "regularMarketVolume": 1000,
                        **meta,
                    }
                }
            ],
            "error": None,
        }
    }


def _chart_symbol(request: httpx.Request) -> str:
    return unquote(request.url.path.rsplit("/", 1)[-1])


def _fmp(handler, api_key: str = "demo") -> FmpBatchProvider:  # noqa: ANN001
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FmpBatchProvider(
        api_key=api_key,
        base_url="https://fmp.test/api/v3",
        executor=_executor(),
        client=client,
    )


def _yahoo(handler, timeout: float = 1.0) -> YahooChartProvider:  # noqa: ANN001
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return YahooChartProvider(
        hosts=[Q1, Q2],
        executor=_executor(timeout=timeout),
        client=client,
        batch_size=10,
        batch_delay_seconds=0,
    )


@pytest.mark.asyncio
async def test_fmp_is_disabled_without_api_key() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=[])

    provider = _fmp(handler, api_key="  ")
    assert provider.enabled is False
    result = await provider.fetch(["AAPL"])
    assert result.quotes is None
    assert calls == []


@pytest.mark.asyncio
async def test_fmp_maps_class_shares_back_to_canonical() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(unquote(request.url.path))
        assert request.url.params["apikey"] == "demo"
        return httpx.Response(
            200,
            json=[
                {"symbol": "BRK.B", "price": 480.0, "previousClose": 475.0, "volume": 2_000_000},
                {"symbol": "AAPL", "price": 245.0, "previousClose": 248.0, "dayHigh": 249.0, "dayLow": 244.0},
            ],
        )

    result = await _fmp(handler).fetch(["BRK-B", "AAPL"])
    assert seen == ["/api/v3/quote/BRK.B,AAPL"]
    assert result.usable
    by_symbol = {q.symbol: q for q in result.quotes}
    assert set(by_symbol) == {"BRK-B", "AAPL"}
    assert by_symbol["BRK-B"].change == pytest.approx(5.0)
    assert by_symbol["AAPL"].high == 249.0
    assert all(q.source is DataSource.PRIMARY for q in result.quotes)


@pytest.mark.asyncio
async def test_fmp_drops_partial_and_unrequested_records() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"symbol": "AAPL", "price": None},
                {"symbol": "MSFT", "price": 410.0, "change": 2.0, "changesPercentage": 0.49},
                {"symbol": "ZZZZ", "price": 1.0},
                {"symbol": "MSFT", "price": 999.0},
                "garbage",
            ],
        )

    result = await _fmp(handler).fetch(["AAPL", "MSFT"])
    assert [q.symbol for q in result.quotes] == ["MSFT"]
    assert result.quotes[0].price == 410.0
    assert result.quotes[0].change_percent == 0.49


@pytest.mark.asyncio
async def test_fmp_error_payload_is_unusable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"Error Message": "Limit Reach"})

    result = await _fmp(handler).fetch(["AAPL"])
    assert result.quotes is None
    assert isinstance(result.errors[0], MalformedPayloadError)
    assert "Limit Reach" in str(result.errors[0])


@pytest.mark.asyncio
async def test_fmp_http_failure_is_recorded_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    result = await _fmp(handler).fetch(["AAPL"])
    assert result.quotes is None
    assert isinstance(result.errors[0], UpstreamHTTPError)


@pytest.mark.asyncio
async def test_yahoo_falls_back_to_second_host_after_timeout() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "query1.finance.yahoo.com":
            await asyncio.sleep(1)
        return httpx.Response(200, json=_chart(245.0, 248.0))

    result = await _yahoo(handler, timeout=0.05).fetch(["AAPL"])
    assert len(result.quotes) == 1
    q = result.quotes[0]
    assert q.symbol == "AAPL"
    assert q.source is DataSource.SECONDARY
    assert q.change == pytest.approx(-3.0)
    assert q.change_percent == pytest.approx(-1.21, abs=0.01)
    assert isinstance(result.errors[0], UpstreamTimeout)


@pytest.mark.asyncio
async def test_yahoo_reads_previous_close_when_chart_close_missing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        meta = {"regularMarketPrice": 11.0, "previousClose": 10.0}
        return httpx.Response(200, json={"chart": {"result": [{"meta": meta}]}})

    result = await _yahoo(handler).fetch(["F"])
    assert result.quotes[0].change_percent == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_yahoo_failed_symbols_do_not_sink_the_batch() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        sym = _chart_symbol(request)
        if sym == "NOPE":
            return httpx.Response(404, json={"chart": {"result": None, "error": {"code": "Not Found"}}})
        if sym == "EMPTY":
            return httpx.Response(200, json={"chart": {"result": None}})
        return httpx.Response(200, json=_chart(100.0, 100.0))

    result = await _yahoo(handler).fetch(["AAPL", "NOPE", "EMPTY", "MSFT"])
    assert [q.symbol for q in result.quotes] == ["AAPL", "MSFT"]
    # each failing symbol tried both hosts
    assert hosts.count("query2.finance.yahoo.com") == 2
    assert len(result.errors) == 4


@pytest.mark.asyncio
async def test_yahoo_requests_futures_symbols_verbatim() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(_chart_symbol(request))
        assert request.url.params["interval"] == "1d"
        assert request.url.params["range"] == "1d"
        return httpx.Response(200, json=_chart(2400.0, 2390.0))

    result = await _yahoo(handler).fetch(["GC=F", "BRK-B"])
    assert sorted(seen) == ["BRK-B", "GC=F"]
    assert [q.symbol for q in result.quotes] == ["GC=F", "BRK-B"]


@pytest.mark.asyncio
async def test_yahoo_invalid_json_tries_next_host() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "query1.finance.yahoo.com":
            return httpx.Response(200, text="<html>captcha</html>")
        return httpx.Response(200, json=_chart(5.0, 4.0))

    result = await _yahoo(handler).fetch(["T"])
    assert result.quotes[0].price == 5.0
    assert isinstance(result.errors[0], MalformedPayloadError)


@pytest.mark.asyncio
async def test_fmp_oversized_field_does_not_sink_the_batch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"symbol": "AAPL", "price": 245.0, "previousClose": 248.0},
                {"symbol": "MSFT", "price": 400.0, "volume": 10**400},
            ],
        )

    result = await _fmp(handler).fetch(["AAPL", "MSFT"])
    assert result.usable
    by_symbol = {q.symbol: q for q in result.quotes}
    assert by_symbol["AAPL"].change == pytest.approx(-3.0)
    assert by_symbol["MSFT"].volume == 0


@pytest.mark.asyncio
async def test_yahoo_undecodable_body_tries_next_host() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "query1.finance.yahoo.com":
            return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"notgzip")
        return httpx.Response(200, json=_chart(245.0, 248.0))

    result = await _yahoo(handler).fetch(["AAPL"])
    assert [q.symbol for q in result.quotes] == ["AAPL"]
    assert result.quotes[0].change_percent == pytest.approx(-1.21, abs=0.01)
    assert isinstance(result.errors[0], UpstreamProtocolError)
