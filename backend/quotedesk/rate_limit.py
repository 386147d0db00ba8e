from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from redis import Redis

from quotedesk.config.settings import RateLimitRule, Settings
from quotedesk.schemas.quote import RateLimitResult

logger = logging.getLogger(__name__)

_KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateWindow:
    count: int
    window_start: float


class CounterStore(Protocol):
    def increment(self, key: str, window_seconds: int) -> RateWindow:
        """Atomically bump the counter for the current window of ``key``.

        A window opens on the first increment and lasts ``window_seconds``;
        once it elapses the next increment starts a new window at count 1.
        """
        ...


class MemoryCounterStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int) -> RateWindow:
        with self._lock:
            now = self._clock()
            current = self._windows.get(key)
            if current is None or now - current.window_start >= window_seconds:
                current = RateWindow(count=0, window_start=now)
            updated = RateWindow(count=current.count + 1, window_start=current.window_start)
            self._windows[key] = updated
            return updated


class RedisCounterStore:
    def __init__(self, client: Redis, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> RedisCounterStore:
        return cls(Redis.from_url(url, socket_timeout=1.0, socket_connect_timeout=1.0))

    def increment(self, key: str, window_seconds: int) -> RateWindow:
        pipe = self._client.pipeline()
        # SET NX opens the window with its expiry; INCR and TTL run in the
        # same MULTI so the count and the window always agree.
        pipe.set(key, 0, ex=window_seconds, nx=True)
        pipe.incr(key)
        pipe.ttl(key)
        _, count, ttl = pipe.execute()
        now = self._clock()
        if ttl is None or ttl < 0:
            window_start = now
        else:
            window_start = now - (window_seconds - int(ttl))
        return RateWindow(count=int(count), window_start=window_start)

    def close(self) -> None:
        self._client.close()


class RateLimiter:
    """Fixed-window request counter keyed by ``(category, key)``.

    Fails open: if the counter store raises, the call is allowed and the
    degradation is logged.
    """

    def __init__(
        self,
        store: CounterStore,
        rules: dict[str, RateLimitRule],
        clock: Callable[[], float] = time.time,
    ) -> None:
        if "default" not in rules:
            raise ValueError("rate limit rules must define a 'default' category")
        self._store = store
        self._rules = rules
        self._clock = clock

    def rule_for(self, category: str) -> RateLimitRule:
        return self._rules.get(category) or self._rules["default"]

    def check_and_consume(self, key: str, category: str = "default") -> RateLimitResult:
        rule = self.rule_for(category)
        counter_key = f"{_KEY_PREFIX}:{category}:{key}"
        try:
            window = self._store.increment(counter_key, rule.window_seconds)
        except Exception as exc:
            logger.warning(
                "Rate limiter store unavailable for %s (%s); failing open: %s",
                counter_key,
                category,
                exc,
            )
            return RateLimitResult(
                allowed=True,
                remaining=rule.limit,
                limit=rule.limit,
                reset_at=self._clock() + rule.window_seconds,
            )

        allowed = window.count <= rule.limit
        if not allowed:
            logger.info("Rate limit reached for %s (%d/%d)", counter_key, window.count, rule.limit)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(rule.limit - window.count, 0),
            limit=rule.limit,
            reset_at=window.window_start + rule.window_seconds,
        )

    def close(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            close()


def rate_limit_headers(result: RateLimitResult, now: float | None = None) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if not result.allowed:
        current = time.time() if now is None else now
        headers["Retry-After"] = str(max(math.ceil(result.reset_at - current), 0))
    return headers


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == "memory":
        store: CounterStore = MemoryCounterStore()
    else:
        store = RedisCounterStore.from_url(settings.redis_url)
    return RateLimiter(store, settings.rate_limits)
