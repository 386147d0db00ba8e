from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

from quotedesk.errors import QuoteValidationError
from quotedesk.rate_limit import RateLimiter, rate_limit_headers
from quotedesk.schemas.api import BatchQuoteData, BatchQuoteResponse, BatchStats, QuoteRecord
from quotedesk.schemas.quote import BatchResult, CacheStats, CircuitBreakerStats
from quotedesk.service import QuoteService

router = APIRouter()


def get_quote_service(request: Request) -> QuoteService:
    return request.app.state.quote_service


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_caller_id(request: Request, x_user_id: str | None = Header(default=None)) -> str:
    if x_user_id and x_user_id.strip():
        return f"user:{x_user_id.strip()}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def _split_symbols(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part for part in raw.split(",") if part.strip()]


def _build_response(result: BatchResult) -> BatchQuoteResponse:
    records: dict[str, QuoteRecord] = {}
    for symbol, quote in result.quotes.items():
        records[symbol] = QuoteRecord(
            symbol=symbol,
            price=float(quote.price),
            change=float(quote.change),
            change_percent=float(quote.change_percent),
            source=quote.source,
            timestamp=quote.timestamp,
        )
    for symbol, error in result.errors.items():
        records[symbol] = QuoteRecord(
            symbol=symbol,
            price=None,
            error=error.message,
            error_kind=error.kind.value,
        )
    stats = BatchStats(
        total=len(records),
        cached=result.cached_count,
        fresh=result.fresh_count,
        errors=len(result.errors),
    )
    return BatchQuoteResponse(data=BatchQuoteData(quotes=records, stats=stats))


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/quotes", response_model=BatchQuoteResponse)
async def batch_quotes_endpoint(
    response: Response,
    symbols: str | None = None,
    caller: str = Depends(get_caller_id),
    service: QuoteService = Depends(get_quote_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> BatchQuoteResponse:
    # 1. Validate before spending the caller's budget
    requested = _split_symbols(symbols)
    if not requested:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "symbols query parameter is required."},
        )

    # 2. Caller rate limit
    decision = await asyncio.to_thread(limiter.check_and_consume, caller, "quotes")
    headers = rate_limit_headers(decision)
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": "Rate limit exceeded.", "type": "rate_limit"},
            headers=headers,
        )
    response.headers.update(headers)

    # 3. Aggregate
    try:
        result = await service.get_batch_quotes(requested)
    except QuoteValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc)},
        ) from exc

    return _build_response(result)


@router.get("/providers/health")
async def providers_health_endpoint(
    service: QuoteService = Depends(get_quote_service),
) -> dict[str, bool]:
    return await service.provider_health()


@router.get("/cache/stats", response_model=CacheStats)
def cache_stats_endpoint(service: QuoteService = Depends(get_quote_service)) -> CacheStats:
    return service.cache.stats()


@router.get("/providers/circuits", response_model=dict[str, CircuitBreakerStats])
def circuit_stats_endpoint(
    service: QuoteService = Depends(get_quote_service),
) -> dict[str, CircuitBreakerStats]:
    return service.circuit_stats()
