"""Market data interfaces for Opticon."""

from .errors import AggregationError, SymbolValidationError, UpstreamError
from .gateway import QuoteAggregator, build_aggregator
from .models import AggregateResult, DataSource, DataStatus, Quote, normalize_quote

__all__ = [
    "AggregateResult",
    "AggregationError",
    "DataSource",
    "DataStatus",
    "Quote",
    "QuoteAggregator",
    "SymbolValidationError",
    "UpstreamError",
    "build_aggregator",
    "normalize_quote",
]
