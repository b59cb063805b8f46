"""Commodity and index board: a fixed key set aggregated through the quote gateway.

Board keys (``gold``, ``us500``...) are the canonical symbols; each provider
gets its own spelling through the codec alias tables.
"""

from __future__ import annotations

from typing import Any

from opticon.marketdata.gateway import QuoteAggregator
from opticon.marketdata.symbols import ProviderKind, SymbolCodec

# key -> (batch provider symbol, per-symbol provider symbol)
BOARD: dict[str, tuple[str, str]] = {
    "gold": ("GCUSD", "GC=F"),
    "silver": ("SIUSD", "SI=F"),
    "platinum": ("PLUSD", "PL=F"),
    "palladium": ("PAUSD", "PA=F"),
    "copper": ("HGUSD", "HG=F"),
    "oil": ("CLUSD", "CL=F"),
    "natgas": ("NGUSD", "NG=F"),
    "nas100": ("^IXIC", "^NDX"),
    "us500": ("^GSPC", "^GSPC"),
    "us30": ("^DJI", "^DJI"),
    "dxy": ("DX-Y.NYB", "DX-Y.NYB"),
}


def board_codec() -> SymbolCodec:
    return SymbolCodec(
        aliases={
            ProviderKind.BATCH: {key: fmp for key, (fmp, _) in BOARD.items()},
            ProviderKind.PER_SYMBOL: {key: yahoo for key, (_, yahoo) in BOARD.items()},
        }
    )


async def fetch_board(aggregator: QuoteAggregator) -> dict[str, Any]:
    """Resolve the whole board; raises ``AggregationError`` when nothing resolves."""
    result = await aggregator.get_quotes(list(BOARD))
    return {
        "status": result.status.value,
        "source": result.source.value,
        "missing": list(result.missing),
        "data": {q.symbol: q.to_dict() for q in result.quotes},
    }
