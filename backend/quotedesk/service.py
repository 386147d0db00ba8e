from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Sequence
from decimal import Decimal

from quotedesk.cache import QuoteCache
from quotedesk.config.settings import Settings
from quotedesk.errors import ProviderError, ProviderErrorKind, QuoteValidationError
from quotedesk.providers.base import QuoteProvider, check_health
from quotedesk.providers.circuit_breaker import CircuitBreakerRegistry
from quotedesk.providers.registry import build_provider_chain
from quotedesk.providers.selector import FallbackOrchestrator
from quotedesk.rate_limit import RateLimiter, build_rate_limiter
from quotedesk.schemas.quote import BatchResult, CircuitBreakerStats, ProviderErrorSummary, Quote

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.\-^=]{0,14}$")


def normalize_symbols(symbols: Iterable[str], max_symbols: int) -> list[str]:
    """Trim, upper-case and de-duplicate symbols, preserving first-seen order."""
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in symbols:
        if raw is None:
            continue
        symbol = str(raw).strip().upper()
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)
        normalized.append(symbol)

    if not normalized:
        raise QuoteValidationError("At least one symbol is required.")
    if len(normalized) > max_symbols:
        raise QuoteValidationError(f"At most {max_symbols} symbols may be requested at once.")
    invalid = [symbol for symbol in normalized if not _SYMBOL_RE.match(symbol)]
    if invalid:
        raise QuoteValidationError("Invalid symbols: " + ", ".join(invalid))
    return normalized


class QuoteService:
    """Batch quote aggregation over the cache and the provider chain.

    Fresh cache hits are answered without I/O. Everything else resolves
    concurrently, bounded by ``concurrency``, each symbol through its own
    fallback chain. One symbol's failure never affects its siblings, and the
    call always returns a complete ``BatchResult``: every requested symbol
    lands in exactly one of ``quotes`` or ``errors``.
    """

    def __init__(
        self,
        *,
        cache: QuoteCache,
        providers: Sequence[QuoteProvider],
        orchestrator: FallbackOrchestrator,
        concurrency: int = 10,
        deadline_seconds: float = 25.0,
        max_symbols: int = 50,
        serve_stale_on_failure: bool = True,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.cache = cache
        self.providers = list(providers)
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.deadline_seconds = deadline_seconds
        self.max_symbols = max_symbols
        self.serve_stale_on_failure = serve_stale_on_failure
        self._inflight: dict[str, asyncio.Task[Quote]] = {}
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None

    async def get_batch_quotes(
        self, symbols: Iterable[str], deadline_seconds: float | None = None
    ) -> BatchResult:
        requested = normalize_symbols(symbols, self.max_symbols)
        deadline = self.deadline_seconds if deadline_seconds is None else deadline_seconds
        result = BatchResult()

        # 1. Fresh cache hits
        needs_fetch: list[str] = []
        for symbol in requested:
            cached = self.cache.get_fresh(symbol)
            if cached is not None:
                result.quotes[symbol] = cached
                result.cached_count += 1
            else:
                needs_fetch.append(symbol)

        # 2. Bounded concurrent resolution of everything else
        if needs_fetch:
            tasks = {asyncio.create_task(self._fetch(symbol)): symbol for symbol in needs_fetch}
            _, not_done = await asyncio.wait(tasks, timeout=deadline)
            for task in not_done:
                task.cancel()
            if not_done:
                await asyncio.gather(*not_done, return_exceptions=True)

            # 3. Merge in request order
            for task, symbol in tasks.items():
                if task in not_done or task.cancelled():
                    self._record_failure(
                        result,
                        symbol,
                        ProviderError(
                            "batch",
                            symbol,
                            ProviderErrorKind.TIMEOUT,
                            f"not resolved within {deadline}s",
                        ),
                    )
                    continue
                error = task.exception()
                if error is None:
                    result.quotes[symbol] = task.result()
                    result.fresh_count += 1
                elif isinstance(error, ProviderError):
                    self._record_failure(result, symbol, error)
                else:
                    logger.error("Unexpected error resolving %s", symbol, exc_info=error)
                    self._record_failure(
                        result,
                        symbol,
                        ProviderError(
                            "batch",
                            symbol,
                            ProviderErrorKind.INVALID_RESPONSE,
                            str(error) or type(error).__name__,
                        ),
                    )

        logger.info(
            "Batch complete: %d quotes, %d errors (%d cached, %d fresh)",
            len(result.quotes),
            len(result.errors),
            result.cached_count,
            result.fresh_count,
        )
        return result

    async def get_quote(self, symbol: str) -> Quote | None:
        result = await self.get_batch_quotes([symbol])
        return next(iter(result.quotes.values()), None)

    async def get_price_map(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        result = await self.get_batch_quotes(symbols)
        return {symbol: quote.price for symbol, quote in result.quotes.items()}

    async def provider_health(self, probe_symbol: str = "AAPL") -> dict[str, bool]:
        checks = await asyncio.gather(
            *(asyncio.to_thread(check_health, provider, probe_symbol) for provider in self.providers)
        )
        return {provider.name: healthy for provider, healthy in zip(self.providers, checks)}

    def circuit_stats(self) -> dict[str, CircuitBreakerStats]:
        return self.orchestrator.breakers.stats()

    async def _fetch(self, symbol: str) -> Quote:
        task = self._inflight.get(symbol)
        if task is None:
            task = asyncio.create_task(self._resolve_and_store(symbol))
            self._inflight[symbol] = task
            task.add_done_callback(lambda done, key=symbol: self._forget(key, done))
        else:
            logger.debug("Joining in-flight resolution for %s", symbol)
        # Shielded: a batch hitting its deadline must not cancel a
        # resolution another batch is also waiting on.
        return await asyncio.shield(task)

    async def _resolve_and_store(self, symbol: str) -> Quote:
        # The slot is held by the resolution itself, so work left running
        # after a batch deadline still counts against the ceiling.
        async with self._slots():
            quote = await self.orchestrator.resolve(symbol, self.providers)
        if not self.cache.put(symbol, quote):
            newer = self.cache.get(symbol)
            if newer is not None:
                return newer
        return quote

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def _forget(self, symbol: str, task: asyncio.Task[Quote]) -> None:
        if self._inflight.get(symbol) is task:
            del self._inflight[symbol]
        if not task.cancelled():
            # Retrieve so an unawaited failure is not reported as never retrieved.
            task.exception()

    def _record_failure(self, result: BatchResult, symbol: str, error: ProviderError) -> None:
        if self.serve_stale_on_failure:
            stale = self.cache.get(symbol)
            if stale is not None:
                logger.info("Serving stale quote for %s after %s", symbol, error.kind.value)
                result.quotes[symbol] = stale
                result.cached_count += 1
                return
        result.errors[symbol] = ProviderErrorSummary.from_error(error)


def build_quote_service(
    settings: Settings,
    *,
    cache: QuoteCache | None = None,
    rate_limiter: RateLimiter | None = None,
    providers: Sequence[QuoteProvider] | None = None,
) -> QuoteService:
    if cache is None:
        cache = QuoteCache(
            settings.quote_cache_ttl_seconds,
            sweep_idle_multiplier=settings.cache_sweep_idle_multiplier,
        )
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings)
    if providers is None:
        providers = build_provider_chain(settings.providers)
    return QuoteService(
        cache=cache,
        providers=providers,
        orchestrator=FallbackOrchestrator(
            rate_limiter, CircuitBreakerRegistry(settings.circuit_breakers)
        ),
        concurrency=settings.batch_concurrency,
        deadline_seconds=settings.batch_deadline_seconds,
        max_symbols=settings.max_batch_symbols,
        serve_stale_on_failure=settings.serve_stale_on_failure,
    )
