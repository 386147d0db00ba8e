from __future__ import annotations

from enum import Enum


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    INVALID_RESPONSE = "invalid_response"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"


class QuoteValidationError(ValueError):
    """Raised for an empty, oversized or malformed symbol list."""


class ProviderError(Exception):
    """A classified failure of one provider for one symbol."""

    def __init__(
        self,
        provider: str,
        symbol: str,
        kind: ProviderErrorKind,
        message: str,
    ) -> None:
        super().__init__(f"{provider} [{kind.value}] {symbol}: {message}")
        self.provider = provider
        self.symbol = symbol
        self.kind = kind
        self.message = message


class ChainExhaustedError(ProviderError):
    """Every provider in the chain failed or was skipped for the symbol."""

    def __init__(self, cause: ProviderError, attempted: list[str]) -> None:
        super().__init__(cause.provider, cause.symbol, cause.kind, cause.message)
        self.cause = cause
        self.attempted = attempted
