"""System endpoints: health and provider status."""

from __future__ import annotations

from fastapi import APIRouter, Request

from opticon import __version__

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(request: Request):
    from opticon.api.app import get_uptime

    settings = request.app.state.settings
    aggregator = request.app.state.quote_aggregator
    board = request.app.state.board_aggregator

    return {
        "status": "ok",
        "version": __version__,
        "uptime_seconds": round(get_uptime(), 1),
        "deterministic_mode": settings.deterministic_mode,
        "providers": {
            "primary": {"name": "fmp", "enabled": settings.primary_enabled},
            "secondary": {"name": "yahoo", "hosts": list(settings.yahoo_hosts)},
        },
        "quotes": aggregator.metrics() if aggregator is not None else None,
        "commodities": board.metrics() if board is not None else None,
    }
