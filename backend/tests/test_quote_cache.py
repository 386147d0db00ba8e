import datetime
import math
from decimal import Decimal

from quotedesk.cache import QuoteCache
from quotedesk.schemas.quote import Quote

T0 = datetime.datetime(2026, 1, 5, 15, 30, tzinfo=datetime.UTC)


class FakeClock:
    def __init__(self, now: datetime.datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


def make_quote(symbol: str, price: str, timestamp: datetime.datetime, source: str = "yahoo") -> Quote:
    return Quote(
        symbol=symbol,
        price=Decimal(price),
        change=Decimal("1.5"),
        change_percent=Decimal("0.75"),
        source=source,
        timestamp=timestamp,
    )


def test_get_returns_none_and_infinite_age_when_absent() -> None:
    cache = QuoteCache(ttl_seconds=60, clock=FakeClock())

    assert cache.get("AAPL") is None
    assert cache.get_fresh("AAPL") is None
    assert math.isinf(cache.age("AAPL"))
    assert cache.is_fresh("AAPL") is False


def test_freshness_is_computed_lazily_on_read() -> None:
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    quote = make_quote("IBM", "100", T0)

    assert cache.put("IBM", quote) is True

    clock.advance(60)
    assert cache.age("IBM") == 60
    assert cache.is_fresh("IBM") is True
    assert cache.get_fresh("IBM") == quote

    clock.advance(1)
    assert cache.is_fresh("IBM") is False
    assert cache.get_fresh("IBM") is None
    # The expired entry is still there for stale reads.
    assert cache.get("IBM") == quote


def test_older_write_does_not_replace_newer_quote() -> None:
    cache = QuoteCache(ttl_seconds=60, clock=FakeClock())
    newer = make_quote("AAPL", "190.10", T0 + datetime.timedelta(seconds=5), source="finnhub")
    older = make_quote("AAPL", "189.00", T0, source="polygon")

    assert cache.put("AAPL", newer) is True
    assert cache.put("AAPL", older) is False

    assert cache.get("AAPL") == newer
    assert cache.stats().discarded_writes == 1


def test_newer_write_replaces_entry_and_resets_age() -> None:
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    cache.put("MSFT", make_quote("MSFT", "410", T0))

    clock.advance(90)
    replacement = make_quote("MSFT", "412", clock.now)
    assert cache.put("MSFT", replacement) is True

    assert cache.age("MSFT") == 0
    assert cache.get_fresh("MSFT") == replacement


def test_sweep_removes_only_long_idle_entries() -> None:
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, sweep_idle_multiplier=10, clock=clock)
    cache.put("AAPL", make_quote("AAPL", "190", T0))
    cache.put("MSFT", make_quote("MSFT", "410", T0))

    clock.advance(500)
    cache.get("MSFT")
    clock.advance(200)

    assert cache.sweep() == 1
    assert cache.get("AAPL") is None
    assert cache.get("MSFT") is not None
    assert cache.stats().size == 1


def test_stats_track_hits_and_misses() -> None:
    cache = QuoteCache(ttl_seconds=60, clock=FakeClock())
    cache.put("AAPL", make_quote("AAPL", "190", T0))

    cache.get_fresh("AAPL")
    cache.get_fresh("TSLA")

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.size == 1

    cache.clear()
    assert cache.stats().size == 0


def test_refetched_entry_is_not_swept_right_after_it_is_written() -> None:
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, sweep_idle_multiplier=10, clock=clock)
    cache.put("IBM", make_quote("IBM", "182", T0))

    clock.advance(700)
    assert cache.get_fresh("IBM") is None
    assert cache.put("IBM", make_quote("IBM", "183", clock.now)) is True

    clock.advance(1)
    assert cache.sweep() == 0
    assert cache.get_fresh("IBM").price == Decimal("183")
