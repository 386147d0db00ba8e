"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import FastAPI

from quotedesk.api.routes import router
from quotedesk.cache import QuoteCache
from quotedesk.config.settings import Settings, settings
from quotedesk.logging_config import configure_logging
from quotedesk.rate_limit import build_rate_limiter
from quotedesk.service import build_quote_service

logger = logging.getLogger(__name__)


async def sweep_cache_periodically(cache: QuoteCache, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        cache.sweep()


def create_app(app_settings: Settings = settings) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(app_settings.log_level)
        rate_limiter = build_rate_limiter(app_settings)
        service = build_quote_service(app_settings, rate_limiter=rate_limiter)
        app.state.rate_limiter = rate_limiter
        app.state.quote_service = service
        sweeper = asyncio.create_task(
            sweep_cache_periodically(service.cache, app_settings.cache_sweep_interval_seconds)
        )
        logger.info(
            "Quote service started with providers: %s",
            ", ".join(provider.name for provider in service.providers) or "none",
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            rate_limiter.close()
            logger.info("Quote service stopped")

    app = FastAPI(title="quotedesk", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
