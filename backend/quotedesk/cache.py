from __future__ import annotations

import datetime
import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass

from quotedesk.schemas.quote import CacheStats, Quote

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass(frozen=True)
class CacheEntry:
    quote: Quote
    stored_at: datetime.datetime


class QuoteCache:
    """In-memory symbol -> quote store with lazy, TTL-based freshness.

    Entries are never mutated: a newer fetch replaces the whole entry, and a
    write carrying an older quote timestamp than the stored one is dropped so
    a slow in-flight response cannot clobber a faster, later one.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        sweep_idle_multiplier: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_idle_multiplier = sweep_idle_multiplier
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._last_read: dict[str, datetime.datetime] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._discarded_writes = 0

    def get(self, symbol: str) -> Quote | None:
        with self._lock:
            entry = self._entries.get(symbol)
            if entry is None:
                return None
            self._last_read[symbol] = self._clock()
            return entry.quote

    def get_fresh(self, symbol: str) -> Quote | None:
        with self._lock:
            entry = self._entries.get(symbol)
            now = self._clock()
            if entry is None or self._age(entry, now) > self.ttl_seconds:
                self._misses += 1
                return None
            self._hits += 1
            self._last_read[symbol] = now
            return entry.quote

    def put(self, symbol: str, quote: Quote) -> bool:
        with self._lock:
            current = self._entries.get(symbol)
            if current is not None and quote.timestamp < current.quote.timestamp:
                self._discarded_writes += 1
                logger.debug(
                    "Discarding out-of-order write for %s (%s < %s)",
                    symbol,
                    quote.timestamp.isoformat(),
                    current.quote.timestamp.isoformat(),
                )
                return False
            now = self._clock()
            self._entries[symbol] = CacheEntry(quote=quote, stored_at=now)
            self._last_read[symbol] = now
            return True

    def age(self, symbol: str) -> float:
        with self._lock:
            entry = self._entries.get(symbol)
            if entry is None:
                return math.inf
            return self._age(entry, self._clock())

    def is_fresh(self, symbol: str) -> bool:
        return self.age(symbol) <= self.ttl_seconds

    def sweep(self) -> int:
        idle_limit = self.ttl_seconds * self.sweep_idle_multiplier
        with self._lock:
            now = self._clock()
            expired = [
                symbol
                for symbol, read_at in self._last_read.items()
                if (now - read_at).total_seconds() > idle_limit
            ]
            for symbol in expired:
                self._entries.pop(symbol, None)
                self._last_read.pop(symbol, None)
        if expired:
            logger.info("Cache sweep removed %d idle entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._last_read.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                discarded_writes=self._discarded_writes,
            )

    @staticmethod
    def _age(entry: CacheEntry, now: datetime.datetime) -> float:
        return (now - entry.stored_at).total_seconds()
