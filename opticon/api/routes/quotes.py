"""Quote endpoints: premium and free stock tiers, commodity board."""

from __future__ import annotations

import logging
from typing import Sequence

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from opticon.marketdata.commodities import fetch_board
from opticon.marketdata.errors import AggregationError, SymbolValidationError
from opticon.marketdata.models import AggregateResult
from opticon.marketdata.symbols import parse_symbols

logger = logging.getLogger(__name__)

router = APIRouter(tags=["quotes"])

STATUS_HEADER = "X-Opticon-Data-Status"
SOURCE_HEADER = "X-Opticon-Data-Source"
_STOCK_CACHE_CONTROL = "s-maxage=60, stale-while-revalidate=300"
_BOARD_CACHE_CONTROL = "s-maxage=60, stale-while-revalidate=120"


def _data_headers(result: AggregateResult, cache_control: str) -> dict[str, str]:
    return {
        "Cache-Control": cache_control,
        STATUS_HEADER: result.status.value,
        SOURCE_HEADER: result.source.value,
    }


async def _serve_stocks(
    request: Request,
    symbols: str | None,
    *,
    max_symbols: int,
    strict: bool,
    default: Sequence[str],
) -> JSONResponse:
    try:
        requested = parse_symbols(symbols, max_symbols=max_symbols, strict=strict, default=default)
    except SymbolValidationError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    aggregator = request.app.state.quote_aggregator
    try:
        result = await aggregator.get_quotes(requested)
    except AggregationError as exc:
        if exc.timed_out:
            return JSONResponse(
                status_code=504,
                content={"error": "Request timeout", "details": str(exc)},
            )
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch stock data", "details": str(exc)},
        )

    return JSONResponse(content=result.to_list(), headers=_data_headers(result, _STOCK_CACHE_CONTROL))


@router.get("/quotes")
async def premium_quotes(request: Request, symbols: str | None = Query(None)):
    """Premium tier: at most 50 symbols, strict ticker syntax."""
    settings = request.app.state.settings
    return await _serve_stocks(
        request,
        symbols,
        max_symbols=settings.premium_max_symbols,
        strict=True,
        default=settings.premium_default_symbols,
    )


@router.get("/quotes/free")
async def free_quotes(request: Request, symbols: str | None = Query(None)):
    """Free tier: up to 100 symbols, no syntax check."""
    settings = request.app.state.settings
    return await _serve_stocks(
        request,
        symbols,
        max_symbols=settings.free_max_symbols,
        strict=False,
        default=settings.free_default_symbols,
    )


@router.get("/commodities")
async def commodities(request: Request):
    aggregator = request.app.state.board_aggregator
    try:
        board = await fetch_board(aggregator)
    except AggregationError as exc:
        return JSONResponse(
            status_code=503,
            content={"error": "No commodity data available", "details": str(exc)},
        )

    if board["missing"]:
        logger.warning(
            "Fetched %d/%d board entries (missing: %s)",
            len(board["data"]), len(board["data"]) + len(board["missing"]), ",".join(board["missing"]),
        )
    return JSONResponse(
        content=board["data"],
        headers={
            "Cache-Control": _BOARD_CACHE_CONTROL,
            STATUS_HEADER: board["status"],
            SOURCE_HEADER: board["source"],
        },
    )
