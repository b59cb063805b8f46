"""Canonical quote record and the normalizer that builds it from provider payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opticon.utils import finite_float


class DataSource(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    MIXED = "mixed"


class DataStatus(str, Enum):
    LIVE = "live"
    CACHE = "cache"
    STALE = "stale"


@dataclass
class Quote:
    symbol: str
    price: float
    change: float
    change_percent: float
    volume: int
    high: float
    low: float
    open: float
    prev_close: float
    fifty_two_week_high: float | None
    fifty_two_week_low: float | None
    source: DataSource

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "change": self.change,
            "changePercent": self.change_percent,
            "volume": self.volume,
            "high": self.high,
            "low": self.low,
            "open": self.open,
            "prevClose": self.prev_close,
            "fiftyTwoWeekHigh": self.fifty_two_week_high,
            "fiftyTwoWeekLow": self.fifty_two_week_low,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Quote | None:
        """Rebuild a quote from its JSON form (used by the Redis cache).

        Change fields are taken as stored rather than re-derived.
        """
        quote = normalize_quote(
            raw.get("symbol"),
            raw.get("price"),
            source=DataSource(raw.get("source") or DataSource.PRIMARY.value),
            volume=raw.get("volume"),
            high=raw.get("high"),
            low=raw.get("low"),
            open_=raw.get("open"),
            fifty_two_week_high=raw.get("fiftyTwoWeekHigh"),
            fifty_two_week_low=raw.get("fiftyTwoWeekLow"),
        )
        if quote is None:
            return None
        quote.change = finite_float(raw.get("change")) or 0.0
        quote.change_percent = finite_float(raw.get("changePercent")) or 0.0
        prev_close = finite_float(raw.get("prevClose"))
        if prev_close is not None:
            quote.prev_close = prev_close
        return quote


@dataclass
class AggregateResult:
    quotes: list[Quote]
    status: DataStatus
    source: DataSource
    missing: list[str] = field(default_factory=list)

    def to_list(self) -> list[dict[str, Any]]:
        return [q.to_dict() for q in self.quotes]


def _volume(value: Any) -> int:
    v = finite_float(value)
    if v is None or v < 0:
        return 0
    return int(v)


def normalize_quote(
    symbol: Any,
    price: Any,
    *,
    source: DataSource,
    change: Any = None,
    change_percent: Any = None,
    volume: Any = None,
    high: Any = None,
    low: Any = None,
    open_: Any = None,
    prev_close: Any = None,
    fifty_two_week_high: Any = None,
    fifty_two_week_low: Any = None,
) -> Quote | None:
    """Map loosely-typed provider fields to a :class:`Quote`.

    Returns ``None`` when the symbol is empty or the price is not a finite
    number; partial records are expected and are not an error.

    When a previous close is known the change fields are derived from it so
    that ``changePercent == (price - prevClose) / prevClose * 100``. A zero
    previous close gives ``change == price`` and ``changePercent == 0``.
    """
    sym = str(symbol).strip() if symbol is not None else ""
    px = finite_float(price)
    if not sym or px is None:
        return None

    pc = finite_float(prev_close)
    if pc is not None:
        chg = px - pc
        chg_pct = (chg / pc * 100.0) if pc != 0 else 0.0
    else:
        chg = finite_float(change) or 0.0
        chg_pct = finite_float(change_percent) or 0.0

    hi = finite_float(high)
    lo = finite_float(low)
    op = finite_float(open_)

    return Quote(
        symbol=sym,
        price=px,
        change=chg,
        change_percent=chg_pct,
        volume=_volume(volume),
        high=hi if hi is not None else px,
        low=lo if lo is not None else px,
        open=op if op is not None else px,
        prev_close=pc if pc is not None else px,
        fifty_two_week_high=finite_float(fifty_two_week_high),
        fifty_two_week_low=finite_float(fifty_two_week_low),
        source=source,
    )
