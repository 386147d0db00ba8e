from __future__ import annotations

from typing import Dict, List, Literal

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    limit: int = Field(gt=0)
    window_seconds: int = Field(default=60, gt=0)


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "default": RateLimitRule(limit=60, window_seconds=60),
        "ai": RateLimitRule(limit=20, window_seconds=60),
        "auth": RateLimitRule(limit=10, window_seconds=60),
        "quotes": RateLimitRule(limit=30, window_seconds=60),
        # Alpha Vantage and Polygon free tiers allow 5 calls per minute.
        "alphavantage": RateLimitRule(limit=5, window_seconds=60),
        "polygon": RateLimitRule(limit=5, window_seconds=60),
        "yahoo": RateLimitRule(limit=60, window_seconds=60),
        "finnhub": RateLimitRule(limit=60, window_seconds=60),
    }


class CircuitBreakerRule(BaseModel):
    failure_threshold: int = Field(default=5, gt=0)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    half_open_max_requests: int = Field(default=3, gt=0)


def _default_circuit_breakers() -> Dict[str, CircuitBreakerRule]:
    return {
        "default": CircuitBreakerRule(),
        "alphavantage": CircuitBreakerRule(
            failure_threshold=3, reset_timeout_seconds=120, half_open_max_requests=1
        ),
    }


class ProviderSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUOTEDESK_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )
    priority: List[str] = Field(
        default_factory=lambda: ["yahoo", "finnhub", "polygon", "alphavantage"]
    )
    timeout_seconds: float = Field(default=8.0, gt=0)

    alphavantage_api_key: str | None = None
    alphavantage_base_url: str = "https://www.alphavantage.co/query"
    polygon_api_key: str | None = None
    polygon_base_url: str = "https://api.polygon.io"
    finnhub_api_key: str | None = None
    finnhub_base_url: str = "https://finnhub.io"
    yahoo_api_key: str | None = None
    yahoo_base_url: str = "https://query1.finance.yahoo.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUOTEDESK_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("REDIS_URL", "QUOTEDESK_REDIS_URL"),
    )
    rate_limit_backend: Literal["redis", "memory"] = "redis"
    log_level: str = "INFO"

    quote_cache_ttl_seconds: float = Field(default=60.0, gt=0)
    cache_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    cache_sweep_idle_multiplier: float = Field(default=10.0, ge=1)

    batch_concurrency: int = Field(default=10, ge=1)
    batch_deadline_seconds: float = Field(default=25.0, gt=0)
    max_batch_symbols: int = Field(default=50, ge=1)
    serve_stale_on_failure: bool = True

    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)
    circuit_breakers: Dict[str, CircuitBreakerRule] = Field(default_factory=_default_circuit_breakers)


settings = Settings()
