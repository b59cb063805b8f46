"""FastAPI application factory with lifespan, CORS, and routers."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opticon import __version__
from opticon.config import Settings, get_settings
from opticon.marketdata.commodities import board_codec
from opticon.marketdata.gateway import QuoteAggregator, build_aggregator

logger = logging.getLogger(__name__)

_start_time: float = 0.0


def get_uptime() -> float:
    return time.time() - _start_time if _start_time else 0.0


@asynccontextmanager
async def _lifespan(app: FastAPI):
    global _start_time
    _start_time = time.time()

    settings: Settings = app.state.settings
    client: httpx.AsyncClient | None = None
    owned: list[QuoteAggregator] = []

    if app.state.quote_aggregator is None:
        client = httpx.AsyncClient()
        app.state.quote_aggregator = build_aggregator(settings, client=client)
        owned.append(app.state.quote_aggregator)
    if app.state.board_aggregator is None:
        if client is None:
            client = httpx.AsyncClient()
        app.state.board_aggregator = build_aggregator(
            settings,
            client=client,
            cache=app.state.quote_aggregator.cache,
            codec=board_codec(),
            completeness_threshold=settings.commodities_completeness_threshold,
        )

    if not settings.primary_enabled:
        logger.warning("FMP_API_KEY not set; batch provider disabled, serving from Yahoo only")
    logger.info("Opticon API v%s starting", __version__)
    yield
    logger.info("Opticon API shutting down")

    # the board shares the quote cache, so closing the quote aggregator covers both
    for aggregator in owned:
        await aggregator.close()
    if client is not None:
        await client.aclose()


def create_app(
    settings: Settings | None = None,
    *,
    quote_aggregator: QuoteAggregator | None = None,
    board_aggregator: QuoteAggregator | None = None,
) -> FastAPI:
    """Build and return the fully-configured FastAPI application.

    Aggregators passed in are used as-is (tests inject fakes); missing ones
    are built from settings at startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Opticon",
        description="Resilient multi-provider market-data aggregator",
        version=__version__,
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.quote_aggregator = quote_aggregator
    app.state.board_aggregator = board_aggregator

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["X-Opticon-Data-Status", "X-Opticon-Data-Source"],
    )

    # Routers
    from opticon.api.routes import quotes, system
    app.include_router(quotes.router, prefix="/api")
    app.include_router(system.router, prefix="/api")

    return app
