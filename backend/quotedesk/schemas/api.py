from __future__ import annotations

import datetime

from pydantic import BaseModel, Field


class QuoteRecord(BaseModel):
    symbol: str
    price: float | None = None
    change: float | None = None
    change_percent: float | None = None
    source: str | None = None
    timestamp: datetime.datetime | None = None
    error: str | None = None
    error_kind: str | None = None


class BatchStats(BaseModel):
    total: int
    cached: int
    fresh: int
    errors: int


class BatchQuoteData(BaseModel):
    quotes: dict[str, QuoteRecord] = Field(default_factory=dict)
    stats: BatchStats


class BatchQuoteResponse(BaseModel):
    success: bool = True
    data: BatchQuoteData
