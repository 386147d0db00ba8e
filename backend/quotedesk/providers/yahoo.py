from __future__ import annotations

import datetime
from typing import Any

from quotedesk.errors import ProviderErrorKind
from quotedesk.providers.base import QuoteProvider, build_url
from quotedesk.schemas.quote import Quote


_QUOTE_PATH = "/v7/finance/quote"


class YahooFinanceProvider(QuoteProvider):
    name = "yahoo"
    requires_api_key = False

    def _request(self, symbol: str) -> Any:
        url = build_url(self.base_url, _QUOTE_PATH, {"symbols": symbol})
        headers = {"User-Agent": "Mozilla/5.0"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return self._get_json(url, symbol, headers=headers)

    def _decode(self, symbol: str, payload: Any, fetched_at: datetime.datetime) -> Quote:
        if not isinstance(payload, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "expected a JSON object")

        response = payload.get("quoteResponse")
        if not isinstance(response, dict) or not isinstance(response.get("result"), list):
            raise self._error(
                symbol, ProviderErrorKind.INVALID_RESPONSE, "unexpected quoteResponse structure"
            )
        if response.get("error"):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, str(response["error"]))

        result = response["result"]
        if not result:
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, "no quote data")

        quote = result[0]
        if not isinstance(quote, dict) or not quote.get("symbol"):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "quote is missing its symbol")

        return self._build_quote(
            symbol,
            quote.get("regularMarketPrice"),
            quote.get("regularMarketChange"),
            quote.get("regularMarketChangePercent"),
            fetched_at,
        )
