from __future__ import annotations

import datetime
from typing import Any

from quotedesk.errors import ProviderErrorKind
from quotedesk.providers.base import QuoteProvider, build_url
from quotedesk.schemas.quote import Quote


_QUOTE_PATH = "/api/v1/quote"


class FinnhubProvider(QuoteProvider):
    name = "finnhub"

    def _request(self, symbol: str) -> Any:
        url = build_url(self.base_url, _QUOTE_PATH, {"symbol": symbol, "token": self.api_key or ""})
        return self._get_json(url, symbol)

    def _decode(self, symbol: str, payload: Any, fetched_at: datetime.datetime) -> Quote:
        if not isinstance(payload, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "expected a JSON object")

        error = payload.get("error")
        if error:
            message = str(error)
            if "limit" in message.lower():
                raise self._error(symbol, ProviderErrorKind.RATE_LIMITED, message)
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, message)

        has_values = payload.get("c") is not None or payload.get("pc") is not None
        if not has_values:
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "quote fields missing")

        # Finnhub answers unknown symbols with an all-zero quote.
        if not payload.get("c") and not payload.get("pc"):
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, "no quote data")

        return self._build_quote(symbol, payload.get("c"), payload.get("d"), payload.get("dp"), fetched_at)
