from __future__ import annotations

import datetime
import json
import logging
import socket
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from quotedesk.cache import Clock, utc_now
from quotedesk.errors import ProviderError, ProviderErrorKind
from quotedesk.schemas.quote import Quote

logger = logging.getLogger(__name__)

_STATUS_KINDS = {
    401: ProviderErrorKind.UNAUTHORIZED,
    403: ProviderErrorKind.UNAUTHORIZED,
    404: ProviderErrorKind.NOT_FOUND,
    408: ProviderErrorKind.TIMEOUT,
    429: ProviderErrorKind.RATE_LIMITED,
}


def build_url(base_url: str, path: str, params: dict[str, str]) -> str:
    url = f"{base_url.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def get_json(
    provider: str,
    symbol: str,
    url: str,
    *,
    timeout: float,
    headers: dict[str, str] | None = None,
) -> Any:
    """Issue one GET and decode the JSON body, classifying every failure."""
    request = Request(url, headers=headers or {})
    try:
        with urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except HTTPError as exc:
        kind = _STATUS_KINDS.get(exc.code, ProviderErrorKind.NETWORK_ERROR)
        raise ProviderError(provider, symbol, kind, f"HTTP {exc.code}") from exc
    except (TimeoutError, socket.timeout) as exc:
        raise ProviderError(
            provider, symbol, ProviderErrorKind.TIMEOUT, f"no response within {timeout}s"
        ) from exc
    except URLError as exc:
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            raise ProviderError(
                provider, symbol, ProviderErrorKind.TIMEOUT, f"no response within {timeout}s"
            ) from exc
        raise ProviderError(
            provider, symbol, ProviderErrorKind.NETWORK_ERROR, str(exc.reason)
        ) from exc
    except OSError as exc:
        raise ProviderError(provider, symbol, ProviderErrorKind.NETWORK_ERROR, str(exc)) from exc

    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise ProviderError(
            provider, symbol, ProviderErrorKind.INVALID_RESPONSE, "response is not valid JSON"
        ) from exc


def parse_decimal(provider: str, symbol: str, field: str, value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ProviderError(
            provider, symbol, ProviderErrorKind.INVALID_RESPONSE, f"missing {field}"
        )
    text = str(value).strip().rstrip("%")
    try:
        parsed = Decimal(text)
    except InvalidOperation as exc:
        raise ProviderError(
            provider, symbol, ProviderErrorKind.INVALID_RESPONSE, f"{field} is not numeric: {value!r}"
        ) from exc
    if not parsed.is_finite():
        raise ProviderError(
            provider, symbol, ProviderErrorKind.INVALID_RESPONSE, f"{field} is not finite"
        )
    return parsed


class QuoteProvider(ABC):
    """One upstream quote source.

    Stateless between calls and safe to share across threads. Never retries:
    every failure surfaces as a classified ``ProviderError``.
    """

    name: str = ""
    requires_api_key: bool = True

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 8.0,
        clock: Clock = utc_now,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or not self.requires_api_key

    def fetch_quote(self, symbol: str) -> Quote:
        # Stamp with the request start so a slower, older response never
        # outranks a newer one in the cache.
        fetched_at = self._clock()
        payload = self._request(symbol)
        return self._decode(symbol, payload, fetched_at)

    @abstractmethod
    def _request(self, symbol: str) -> Any: ...

    @abstractmethod
    def _decode(self, symbol: str, payload: Any, fetched_at: datetime.datetime) -> Quote: ...

    def _get_json(self, url: str, symbol: str, headers: dict[str, str] | None = None) -> Any:
        return get_json(self.name, symbol, url, timeout=self.timeout_seconds, headers=headers)

    def _error(self, symbol: str, kind: ProviderErrorKind, message: str) -> ProviderError:
        return ProviderError(self.name, symbol, kind, message)

    def _build_quote(
        self,
        symbol: str,
        price: Any,
        change: Any,
        change_percent: Any,
        fetched_at: datetime.datetime,
    ) -> Quote:
        parsed_price = parse_decimal(self.name, symbol, "price", price)
        if parsed_price <= 0:
            raise self._error(
                symbol, ProviderErrorKind.INVALID_RESPONSE, f"non-positive price {parsed_price}"
            )
        return Quote(
            symbol=symbol,
            price=parsed_price,
            change=parse_decimal(self.name, symbol, "change", change if change is not None else 0),
            change_percent=parse_decimal(
                self.name,
                symbol,
                "change_percent",
                change_percent if change_percent is not None else 0,
            ),
            source=self.name,
            timestamp=fetched_at,
        )


def check_health(provider: QuoteProvider, probe_symbol: str = "AAPL") -> bool:
    try:
        provider.fetch_quote(probe_symbol)
    except ProviderError as exc:
        logger.warning("Health check failed for %s: %s", provider.name, exc)
        return False
    return True
