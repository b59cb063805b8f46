"""Opticon: resilient multi-provider market-data aggregator."""

__version__ = "0.3.0"
