from __future__ import annotations

import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from quotedesk.errors import ChainExhaustedError, ProviderError, ProviderErrorKind


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Decimal = Field(gt=0)
    change: Decimal = Decimal("0")
    change_percent: Decimal = Decimal("0")
    source: str
    timestamp: datetime.datetime


class ProviderErrorSummary(BaseModel):
    provider: str
    kind: ProviderErrorKind
    message: str
    attempted: list[str] = Field(default_factory=list)

    @classmethod
    def from_error(cls, error: ProviderError) -> ProviderErrorSummary:
        attempted = error.attempted if isinstance(error, ChainExhaustedError) else [error.provider]
        return cls(
            provider=error.provider,
            kind=error.kind,
            message=error.message,
            attempted=list(attempted),
        )


class BatchResult(BaseModel):
    quotes: dict[str, Quote] = Field(default_factory=dict)
    errors: dict[str, ProviderErrorSummary] = Field(default_factory=dict)
    cached_count: int = 0
    fresh_count: int = 0


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    reset_at: float


class CacheStats(BaseModel):
    size: int
    hits: int
    misses: int
    discarded_writes: int


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerStats(BaseModel):
    state: CircuitState
    consecutive_failures: int
    attempts: int
    successes: int
    failures: int
    rejected: int
    last_failure_at: float | None = None
    last_success_at: float | None = None
    retry_at: float | None = None
