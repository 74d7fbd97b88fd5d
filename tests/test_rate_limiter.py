"""Tests for the per-sender rate limiter."""

from ordergate.services.rate_limiter import InMemoryCounterStore, RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestInMemoryCounterStore:
    def test_allows_up_to_limit(self):
        store = InMemoryCounterStore(clock=FakeClock())

        assert store.consume("k", 2, 60).allowed is True
        assert store.consume("k", 2, 60).allowed is True
        assert store.consume("k", 2, 60).allowed is False

    def test_keys_are_independent(self):
        store = InMemoryCounterStore(clock=FakeClock())
        store.consume("a", 1, 60)

        assert store.consume("b", 1, 60).allowed is True
        assert len(store) == 2

    def test_denial_reports_remaining_window(self):
        clock = FakeClock()
        store = InMemoryCounterStore(clock=clock)
        store.consume("k", 1, 60)
        clock.advance(20.5)

        result = store.consume("k", 1, 60)

        assert result.allowed is False
        assert result.remaining_seconds == 40


class TestRateLimiter:
    def test_third_call_limited_fourth_after_window_allowed(self):
        clock = FakeClock()
        limiter = RateLimiter(InMemoryCounterStore(clock=clock))

        assert limiter.consume("owner-1", "15551230000", 2).limited is False
        assert limiter.consume("owner-1", "15551230000", 2).limited is False
        third = limiter.consume("owner-1", "15551230000", 2)
        assert third.limited is True
        assert third.remaining_seconds > 0

        clock.advance(61)
        assert limiter.consume("owner-1", "15551230000", 2).limited is False

    def test_zero_limit_denies_everything(self):
        limiter = RateLimiter(InMemoryCounterStore(clock=FakeClock()))

        assert limiter.consume("owner-1", "15551230000", 0).limited is True

    def test_limits_are_per_owner(self):
        limiter = RateLimiter(InMemoryCounterStore(clock=FakeClock()))
        limiter.consume("owner-1", "15551230000", 1)

        assert limiter.consume("owner-1", "15551230000", 1).limited is True
        assert limiter.consume("owner-2", "15551230000", 1).limited is False

    def test_keeps_injected_empty_store(self):
        store = InMemoryCounterStore(clock=FakeClock())
        limiter = RateLimiter(store)

        limiter.consume("owner-1", "15551230000", 5)

        assert len(store) == 1

    def test_uses_injected_store(self):
        class DenyAll:
            def consume(self, key, limit, window):
                from ordergate.services.rate_limiter import ConsumeResult

                return ConsumeResult(allowed=False, remaining_seconds=7)

        result = RateLimiter(DenyAll()).consume("owner-1", "1", 10)

        assert result.limited is True
        assert result.remaining_seconds == 7
