from quotedesk.config.settings import CircuitBreakerRule
from quotedesk.providers.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from quotedesk.schemas.quote import CircuitState


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_breaker(clock: FakeClock, threshold: int = 3, timeout: float = 30.0, trials: int = 2) -> CircuitBreaker:
    rule = CircuitBreakerRule(
        failure_threshold=threshold,
        reset_timeout_seconds=timeout,
        half_open_max_requests=trials,
    )
    return CircuitBreaker("finnhub", rule, clock=clock)


def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.rule.failure_threshold):
        assert breaker.allow()
        breaker.record_failure()


def test_opens_after_consecutive_failures() -> None:
    breaker = make_breaker(FakeClock())

    for _ in range(2):
        assert breaker.allow()
        breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED

    assert breaker.allow()
    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    assert breaker.stats().consecutive_failures == 3


def test_success_resets_the_failure_streak() -> None:
    breaker = make_breaker(FakeClock())

    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().consecutive_failures == 2


def test_open_circuit_rejects_until_reset_timeout() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)

    clock.advance(29)
    assert not breaker.allow()
    assert not breaker.allow()

    clock.advance(1)
    assert breaker.allow()
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.stats().rejected == 2


def test_half_open_allows_limited_trials() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock, trials=2)
    trip(breaker)
    clock.advance(30)

    assert breaker.allow()
    assert breaker.allow()
    assert not breaker.allow()


def test_half_open_success_closes_the_circuit() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)
    clock.advance(30)

    assert breaker.allow()
    breaker.record_success()

    stats = breaker.stats()
    assert stats.state is CircuitState.CLOSED
    assert stats.consecutive_failures == 0
    assert stats.retry_at is None
    assert breaker.allow()


def test_half_open_failure_reopens_the_circuit() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)
    clock.advance(30)

    assert breaker.allow()
    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    assert breaker.stats().retry_at == clock.now + 30
    assert not breaker.allow()


def test_late_success_does_not_close_an_open_circuit() -> None:
    breaker = make_breaker(FakeClock())
    trip(breaker)

    breaker.record_success()

    assert breaker.state is CircuitState.OPEN
    assert not breaker.allow()


def test_unreported_trials_are_retried_after_another_timeout() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock, trials=1)
    trip(breaker)
    clock.advance(30)

    # The trial never reports back.
    assert breaker.allow()
    assert not breaker.allow()

    clock.advance(30)
    assert breaker.allow()
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED


def test_reset_closes_the_circuit() -> None:
    breaker = make_breaker(FakeClock())
    trip(breaker)

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.allow()


def test_registry_uses_named_rule_or_default() -> None:
    registry = CircuitBreakerRegistry(
        {
            "default": CircuitBreakerRule(failure_threshold=5),
            "alphavantage": CircuitBreakerRule(failure_threshold=1),
        },
        clock=FakeClock(),
    )

    assert registry.get("alphavantage").rule.failure_threshold == 1
    assert registry.get("polygon").rule.failure_threshold == 5
    assert registry.get("polygon") is registry.get("polygon")


def test_registry_reports_stats_for_every_breaker_used() -> None:
    registry = CircuitBreakerRegistry(
        {"default": CircuitBreakerRule(failure_threshold=1)},
        clock=FakeClock(),
    )
    registry.get("yahoo").allow()
    registry.get("yahoo").record_success()
    registry.get("finnhub").allow()
    registry.get("finnhub").record_failure()

    stats = registry.stats()

    assert set(stats) == {"yahoo", "finnhub"}
    assert stats["yahoo"].successes == 1
    assert stats["finnhub"].state is CircuitState.OPEN
    assert stats["finnhub"].last_failure_at == 1_000.0

    registry.reset_all()
    assert registry.stats()["finnhub"].state is CircuitState.CLOSED
