from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from quotedesk.errors import ChainExhaustedError, ProviderError, ProviderErrorKind
from quotedesk.providers.base import QuoteProvider
from quotedesk.providers.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from quotedesk.rate_limit import RateLimiter
from quotedesk.schemas.quote import Quote

logger = logging.getLogger(__name__)

# A provider that answers "no such symbol" is healthy as far as the breaker
# is concerned.
_HEALTHY_FAILURES = frozenset({ProviderErrorKind.NOT_FOUND})


class FallbackOrchestrator:
    """Resolve one symbol by walking an ordered provider chain.

    Attempts are strictly sequential and the first success wins. A provider
    whose circuit is open or whose rate budget is spent is skipped without
    counting as a failure. When the chain is exhausted the last error seen
    from an attempted provider is surfaced; if nothing was attempted, the
    reason the last provider was skipped is surfaced instead (``rate_limited``
    for a spent budget, ``network_error`` for an open circuit).
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self.breakers = breakers or CircuitBreakerRegistry()

    async def resolve(self, symbol: str, chain: Sequence[QuoteProvider]) -> Quote:
        attempted: list[str] = []
        last_error: ProviderError | None = None
        last_skip: ProviderError | None = None

        for provider in chain:
            breaker = self.breakers.get(provider.name)
            if not breaker.allow():
                logger.info("Skipping %s for %s: circuit open", provider.name, symbol)
                last_skip = ProviderError(
                    provider.name, symbol, ProviderErrorKind.NETWORK_ERROR, "circuit open"
                )
                continue

            if not await self._within_budget(provider):
                logger.info("Skipping %s for %s: provider rate budget exhausted", provider.name, symbol)
                last_skip = ProviderError(
                    provider.name, symbol, ProviderErrorKind.RATE_LIMITED, "provider rate budget exhausted"
                )
                continue

            attempted.append(provider.name)
            try:
                quote = await asyncio.to_thread(provider.fetch_quote, symbol)
            except ProviderError as exc:
                last_error = exc
                self._record(breaker, exc.kind)
                logger.warning("%s failed for %s (%s): %s", provider.name, symbol, exc.kind.value, exc.message)
                continue
            except Exception as exc:
                logger.exception("Unexpected error from %s for %s", provider.name, symbol)
                last_error = ProviderError(
                    provider.name, symbol, ProviderErrorKind.INVALID_RESPONSE, str(exc) or type(exc).__name__
                )
                self._record(breaker, last_error.kind)
                continue

            breaker.record_success()
            logger.debug("Resolved %s via %s after %d attempt(s)", symbol, provider.name, len(attempted))
            return quote

        if last_error is None:
            last_error = last_skip or ProviderError(
                "none", symbol, ProviderErrorKind.NOT_FOUND, "no quote providers configured"
            )
        raise ChainExhaustedError(last_error, attempted)

    @staticmethod
    def _record(breaker: CircuitBreaker, kind: ProviderErrorKind) -> None:
        if kind in _HEALTHY_FAILURES:
            breaker.record_success()
        else:
            breaker.record_failure()

    async def _within_budget(self, provider: QuoteProvider) -> bool:
        if self._rate_limiter is None:
            return True
        decision = await asyncio.to_thread(
            self._rate_limiter.check_and_consume, f"provider:{provider.name}", provider.name
        )
        return decision.allowed
