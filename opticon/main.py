"""Opticon CLI entrypoint.

Serve the API or run a single aggregation from the shell::

    python -m opticon.main --server
    python -m opticon.main --fetch AAPL,MSFT,BRK-B
    python -m opticon.main --commodities
    python -m opticon.main --status
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from opticon import __version__
from opticon.config import Settings, get_settings
from opticon.marketdata.commodities import board_codec, fetch_board
from opticon.marketdata.errors import AggregationError, SymbolValidationError
from opticon.marketdata.gateway import build_aggregator
from opticon.marketdata.symbols import parse_symbols
from opticon.utils import setup_logging

logger = logging.getLogger("opticon")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opticon",
        description="Opticon: resilient multi-provider quote aggregator",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--server", action="store_true", help="Run FastAPI server (default)")
    group.add_argument("--fetch", metavar="SYMBOLS", help="Aggregate one comma-separated symbol list and print JSON")
    group.add_argument("--commodities", action="store_true", help="Aggregate the commodity board and print JSON")
    group.add_argument("--status", action="store_true", help="Print provider configuration")

    parser.add_argument(
        "--deterministic",
        action="store_true",
        help="Disable cache, retry backoff and inter-batch delays",
    )
    return parser


async def _fetch(settings: Settings, raw: str) -> int:
    try:
        symbols = parse_symbols(raw, max_symbols=settings.free_max_symbols)
    except SymbolValidationError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 2

    aggregator = build_aggregator(settings)
    try:
        result = await aggregator.get_quotes(symbols)
    except AggregationError as exc:
        print(json.dumps({"error": str(exc), "timed_out": exc.timed_out}), file=sys.stderr)
        return 1
    finally:
        await aggregator.close()

    print(json.dumps(
        {
            "status": result.status.value,
            "source": result.source.value,
            "missing": result.missing,
            "quotes": result.to_list(),
        },
        indent=2,
    ))
    return 0


async def _commodities(settings: Settings) -> int:
    aggregator = build_aggregator(
        settings,
        codec=board_codec(),
        completeness_threshold=settings.commodities_completeness_threshold,
    )
    try:
        board = await fetch_board(aggregator)
    except AggregationError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 1
    finally:
        await aggregator.close()
    print(json.dumps(board, indent=2))
    return 0


def _status(settings: Settings) -> int:
    print(json.dumps(
        {
            "version": __version__,
            "primary": {"name": "fmp", "enabled": settings.primary_enabled, "base_url": settings.fmp_base_url},
            "secondary": {"name": "yahoo", "hosts": settings.yahoo_hosts},
            "cache_backend": settings.cache_backend,
            "deterministic_mode": settings.deterministic_mode,
        },
        indent=2,
    ))
    return 0


async def _serve(settings: Settings) -> None:
    import uvicorn
    from opticon.api.app import create_app

    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    settings = get_settings()
    if args.deterministic:
        settings = settings.model_copy(update={"deterministic_mode": True})
    setup_logging(settings.log_level)

    try:
        if args.fetch:
            sys.exit(asyncio.run(_fetch(settings, args.fetch)))
        if args.commodities:
            sys.exit(asyncio.run(_commodities(settings)))
        if args.status:
            sys.exit(_status(settings))
        logger.info("Starting Opticon API v%s on %s:%d", __version__, settings.api_host, settings.api_port)
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
