from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from quotedesk.config.settings import CircuitBreakerRule
from quotedesk.schemas.quote import CircuitBreakerStats, CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Per-provider breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

    ``failure_threshold`` consecutive failures open the circuit. Once
    ``reset_timeout_seconds`` have passed, up to ``half_open_max_requests``
    trial calls are let through; one success closes the circuit and one
    failure opens it again.
    """

    def __init__(
        self,
        name: str,
        rule: CircuitBreakerRule,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.rule = rule
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_attempts = 0
        self._retry_at: float | None = None
        self._attempts = 0
        self._successes = 0
        self._failures = 0
        self._rejected = 0
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    def allow(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.OPEN:
                if self._retry_at is None or now < self._retry_at:
                    self._rejected += 1
                    return False
                self._start_trials(now)
                logger.info("Circuit for %s is half-open; allowing trial requests", self.name)

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_attempts >= self.rule.half_open_max_requests:
                    # Trials that never reported back (cancelled, or skipped
                    # by the rate limiter) must not pin the circuit half-open.
                    if self._retry_at is None or now < self._retry_at:
                        self._rejected += 1
                        return False
                    self._start_trials(now)
                self._half_open_attempts += 1

            self._attempts += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            self._last_success_at = self._clock()
            if self._state is CircuitState.OPEN:
                # A call started before the circuit opened; only a trial closes it.
                return
            if self._state is CircuitState.HALF_OPEN:
                logger.info("Provider %s recovered; circuit closed", self.name)
            self._close()

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._failures += 1
            self._consecutive_failures += 1
            self._last_failure_at = now
            if self._state is CircuitState.HALF_OPEN:
                logger.warning("Trial request to %s failed; circuit open again", self.name)
                self._open(now)
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.rule.failure_threshold
            ):
                logger.warning(
                    "Provider %s failed %d times in a row; circuit open for %ss",
                    self.name,
                    self._consecutive_failures,
                    self.rule.reset_timeout_seconds,
                )
                self._open(now)

    def reset(self) -> None:
        with self._lock:
            self._close()

    def stats(self) -> CircuitBreakerStats:
        with self._lock:
            return CircuitBreakerStats(
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                attempts=self._attempts,
                successes=self._successes,
                failures=self._failures,
                rejected=self._rejected,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                retry_at=self._retry_at,
            )

    def _start_trials(self, now: float) -> None:
        self._state = CircuitState.HALF_OPEN
        self._half_open_attempts = 0
        self._retry_at = now + self.rule.reset_timeout_seconds

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._retry_at = now + self.rule.reset_timeout_seconds
        self._half_open_attempts = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_attempts = 0
        self._retry_at = None


class CircuitBreakerRegistry:
    """One breaker per provider name, created on first use."""

    def __init__(
        self,
        rules: dict[str, CircuitBreakerRule] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rules = rules or {"default": CircuitBreakerRule()}
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                rule = self._rules.get(name) or self._rules.get("default") or CircuitBreakerRule()
                breaker = CircuitBreaker(name, rule, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def stats(self) -> dict[str, CircuitBreakerStats]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.stats() for breaker in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
