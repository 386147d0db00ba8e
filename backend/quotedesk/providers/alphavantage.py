from __future__ import annotations

import datetime
from typing import Any

from quotedesk.errors import ProviderErrorKind
from quotedesk.providers.base import QuoteProvider, build_url
from quotedesk.schemas.quote import Quote


class AlphaVantageProvider(QuoteProvider):
    """``GLOBAL_QUOTE`` endpoint.

    Alpha Vantage reports throttling inside a 200 body (``Note`` or
    ``Information``) rather than with a 429, so every payload is checked for
    those fields before it is decoded.
    """

    name = "alphavantage"

    def _request(self, symbol: str) -> Any:
        url = build_url(
            self.base_url,
            "",
            {"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": self.api_key or ""},
        )
        return self._get_json(url, symbol)

    def _decode(self, symbol: str, payload: Any, fetched_at: datetime.datetime) -> Quote:
        if not isinstance(payload, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "expected a JSON object")

        for field in ("Note", "Information"):
            if payload.get(field):
                raise self._error(symbol, ProviderErrorKind.RATE_LIMITED, str(payload[field]))

        if payload.get("Error Message"):
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, str(payload["Error Message"]))

        quote = payload.get("Global Quote")
        if quote is None:
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "missing 'Global Quote'")
        if not isinstance(quote, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "'Global Quote' is not an object")
        if not quote or not quote.get("01. symbol"):
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, "no quote data")

        return self._build_quote(
            symbol,
            quote.get("05. price"),
            quote.get("09. change"),
            quote.get("10. change percent"),
            fetched_at,
        )
