"""Symbol request parsing and provider spelling translation."""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Iterable

from opticon.marketdata.errors import SymbolValidationError

logger = logging.getLogger(__name__)

_ALLOWED_SYMBOL = re.compile(r"^[A-Za-z0-9.=^-]+$")

INVALID_FORMAT = "Invalid symbols format"
NO_SYMBOLS = "No symbols provided"


class ProviderKind(str, Enum):
    BATCH = "batch"
    PER_SYMBOL = "per_symbol"


def parse_symbols(
    raw: str | None,
    *,
    max_symbols: int,
    strict: bool = False,
    default: Iterable[str] = (),
) -> list[str]:
    """Turn a ``?symbols=`` value into an ordered, de-duplicated ticker list.

    ``None`` selects ``default``. The limit is checked against the raw token
    count, before duplicates are dropped.
    """
    if raw is None:
        tokens = [str(s) for s in default]
    else:
        tokens = [s.strip() for s in raw.split(",") if s.strip()]

    if not tokens:
        raise SymbolValidationError(NO_SYMBOLS)
    if len(tokens) > max_symbols:
        raise SymbolValidationError(f"Too many symbols (max {max_symbols})")
    if strict and not all(_ALLOWED_SYMBOL.match(t) for t in tokens):
        raise SymbolValidationError(INVALID_FORMAT)

    out: list[str] = []
    seen: set[str] = set()
    for token in tokens:
        sym = token.upper()
        if sym in seen:
            continue
        seen.add(sym)
        out.append(sym)
    return out


def cache_key(symbols: Iterable[str]) -> str:
    return ",".join(sorted(symbols))


class SymbolCodec:
    """Bidirectional canonical <-> provider ticker spelling.

    The batch provider spells class shares with a dot (``BRK.B``) where the
    canonical form uses a hyphen (``BRK-B``); the per-symbol provider uses the
    canonical form. ``aliases`` overrides the rule per provider kind, e.g.
    ``{ProviderKind.BATCH: {"gold": "GCUSD"}}``.
    """

    def __init__(self, aliases: dict[ProviderKind, dict[str, str]] | None = None) -> None:
        self._aliases: dict[ProviderKind, dict[str, str]] = {
            kind: dict(table) for kind, table in (aliases or {}).items()
        }
        self._inverse: dict[ProviderKind, dict[str, str]] = {
            kind: {v: k for k, v in table.items()} for kind, table in self._aliases.items()
        }

    def to_provider(self, canonical: str, kind: ProviderKind) -> str:
        alias = self._aliases.get(kind, {}).get(canonical)
        if alias is not None:
            return alias
        if kind is ProviderKind.BATCH:
            return canonical.replace("-", ".")
        return canonical

    def to_canonical(
        self,
        provider_symbol: str,
        kind: ProviderKind,
        requested: Iterable[str] | None = None,
    ) -> str:
        if requested is not None:
            hit = self.reverse_map(requested, kind).get(provider_symbol)
            if hit is not None:
                return hit
        alias = self._inverse.get(kind, {}).get(provider_symbol)
        if alias is not None:
            return alias
        if kind is ProviderKind.BATCH:
            return provider_symbol.replace(".", "-")
        return provider_symbol

    def reverse_map(self, requested: Iterable[str], kind: ProviderKind) -> dict[str, str]:
        """Provider spelling -> canonical spelling for one request."""
        out: dict[str, str] = {}
        for canonical in requested:
            provider_symbol = self.to_provider(canonical, kind)
            if provider_symbol in out:
                logger.warning(
                    "symbol collision for %s provider: %s and %s both map to %s",
                    kind.value, out[provider_symbol], canonical, provider_symbol,
                )
                continue
            out[provider_symbol] = canonical
        return out
