from __future__ import annotations

import datetime
from typing import Any

from quotedesk.errors import ProviderErrorKind
from quotedesk.providers.base import QuoteProvider, build_url
from quotedesk.schemas.quote import Quote


_SNAPSHOT_PATH = "/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}"


def _nested_price(ticker: dict, section: str, field: str) -> Any:
    value = ticker.get(section)
    if isinstance(value, dict):
        return value.get(field) or None
    return None


class PolygonProvider(QuoteProvider):
    name = "polygon"

    def _request(self, symbol: str) -> Any:
        url = build_url(
            self.base_url,
            _SNAPSHOT_PATH.format(symbol=symbol),
            {"apiKey": self.api_key or ""},
        )
        return self._get_json(url, symbol)

    def _decode(self, symbol: str, payload: Any, fetched_at: datetime.datetime) -> Quote:
        if not isinstance(payload, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "expected a JSON object")

        status = str(payload.get("status") or "").upper()
        message = str(payload.get("error") or payload.get("message") or status)
        if status == "NOT_FOUND":
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, message)
        if status == "ERROR":
            if "exceeded" in message.lower():
                raise self._error(symbol, ProviderErrorKind.RATE_LIMITED, message)
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, message)
        if status == "NOT_AUTHORIZED":
            raise self._error(symbol, ProviderErrorKind.UNAUTHORIZED, message)

        ticker = payload.get("ticker")
        if ticker is None:
            raise self._error(symbol, ProviderErrorKind.NOT_FOUND, "no snapshot for symbol")
        if not isinstance(ticker, dict):
            raise self._error(symbol, ProviderErrorKind.INVALID_RESPONSE, "'ticker' is not an object")

        price = (
            _nested_price(ticker, "lastTrade", "p")
            or _nested_price(ticker, "day", "c")
            or _nested_price(ticker, "prevDay", "c")
        )
        return self._build_quote(
            symbol,
            price,
            ticker.get("todaysChange"),
            ticker.get("todaysChangePerc"),
            fetched_at,
        )
