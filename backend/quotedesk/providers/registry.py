from __future__ import annotations

import logging

from quotedesk.config.settings import ProviderSettings
from quotedesk.providers.alphavantage import AlphaVantageProvider
from quotedesk.providers.base import QuoteProvider
from quotedesk.providers.finnhub import FinnhubProvider
from quotedesk.providers.polygon import PolygonProvider
from quotedesk.providers.yahoo import YahooFinanceProvider

logger = logging.getLogger(__name__)


def _build_provider(name: str, config: ProviderSettings) -> QuoteProvider:
    timeout = config.timeout_seconds
    if name == "alphavantage":
        return AlphaVantageProvider(
            base_url=config.alphavantage_base_url,
            api_key=config.alphavantage_api_key,
            timeout_seconds=timeout,
        )
    if name == "polygon":
        return PolygonProvider(
            base_url=config.polygon_base_url,
            api_key=config.polygon_api_key,
            timeout_seconds=timeout,
        )
    if name == "finnhub":
        return FinnhubProvider(
            base_url=config.finnhub_base_url,
            api_key=config.finnhub_api_key,
            timeout_seconds=timeout,
        )
    if name == "yahoo":
        return YahooFinanceProvider(
            base_url=config.yahoo_base_url,
            api_key=config.yahoo_api_key,
            timeout_seconds=timeout,
        )
    raise ValueError(f"Unknown quote provider: {name!r}")


def build_provider_chain(config: ProviderSettings) -> list[QuoteProvider]:
    """Instantiate providers in priority order, leaving out unconfigured ones."""
    chain: list[QuoteProvider] = []
    seen: set[str] = set()
    for raw_name in config.priority:
        name = raw_name.strip().lower()
        if not name or name in seen:
            continue
        seen.add(name)
        provider = _build_provider(name, config)
        if not provider.configured:
            logger.warning("Provider %s has no API key configured; leaving it out of the chain", name)
            continue
        chain.append(provider)
    if not chain:
        logger.error("No quote providers are configured; every symbol will fail")
    return chain
