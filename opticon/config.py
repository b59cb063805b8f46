"""Centralized configuration via pydantic-settings, loaded from .env."""

from __future__ import annotations

import functools

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Upstream providers ─────────────────────────────────────────────
    fmp_api_key: str = ""
    fmp_base_url: str = "https://financialmodelingprep.com/api/v3"
    yahoo_hosts: list[str] = [
        "https://query1.finance.yahoo.com",
        "https://query2.finance.yahoo.com",
    ]

    # ── Execution ──────────────────────────────────────────────────────
    request_timeout_seconds: float = 8.0
    max_attempts_per_provider: int = 2
    retry_base_delay_seconds: float = 0.25
    fanout_batch_size: int = 10
    fanout_delay_seconds: float = 0.1

    # ── Cache ──────────────────────────────────────────────────────────
    cache_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: float = 90.0
    stale_ttl_seconds: float = 300.0

    # ── Aggregation policy ─────────────────────────────────────────────
    completeness_threshold: float = 0.5
    commodities_completeness_threshold: float = 0.5
    coalesce_requests: bool = True

    # ── Endpoint tiers ─────────────────────────────────────────────────
    premium_max_symbols: int = 50
    free_max_symbols: int = 100
    premium_default_symbols: list[str] = [
        "AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA", "NVDA", "CRM", "PLTR",
        "HOOD", "COST", "JPM", "WMT", "TGT", "PG", "HIMS", "COIN", "XYZ",
        "SHOP", "RKLB", "SOFI", "T", "IBM", "DIS", "IWM", "GC=F", "SI=F", "CL=F",
    ]
    free_default_symbols: list[str] = ["AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA", "NVDA"]

    # ── API Server ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Operational Settings ───────────────────────────────────────────
    log_level: str = "INFO"
    deterministic_mode: bool = False  # no cache, no backoff or inter-batch sleeps

    # ── Computed helpers ───────────────────────────────────────────────
    @property
    def primary_enabled(self) -> bool:
        """The batch provider is only usable with an API key."""
        return bool(self.fmp_api_key.strip())

    @property
    def effective_retry_delay(self) -> float:
        return 0.0 if self.deterministic_mode else self.retry_base_delay_seconds

    @property
    def effective_fanout_delay(self) -> float:
        return 0.0 if self.deterministic_mode else self.fanout_delay_seconds


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton accessor for the global settings."""
    return Settings()
