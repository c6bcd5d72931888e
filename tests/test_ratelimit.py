"""Tests for coach.core.ratelimit - TTL store and sliding-window limiter."""

from coach.core.ratelimit import KeyedTTLStore, RateLimiter


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class TestKeyedTTLStore:
    def test_get_before_and_after_expiry(self):
        clock = FakeClock()
        store = KeyedTTLStore(ttl_seconds=10, clock=clock)
        store.set("a", 1)
        assert store.get("a") == 1
        clock.now += 10
        assert store.get("a") is None
        assert store.get("a", default=0) == 0

    def test_contains_and_len(self):
        clock = FakeClock()
        store = KeyedTTLStore(ttl_seconds=5, clock=clock)
        store.set("a", 1)
        clock.now += 3
        store.set("b", 2)
        assert "a" in store and len(store) == 2
        clock.now += 3
        assert "a" not in store
        assert len(store) == 1

    def test_delete_and_purge(self):
        clock = FakeClock()
        store = KeyedTTLStore(ttl_seconds=5, clock=clock)
        store.set("a", 1)
        store.set("b", 2)
        store.delete("a")
        clock.now += 6
        assert store.purge_expired() == 1


class TestRateLimiter:
    def test_allows_up_to_limit(self):
        limiter = RateLimiter(max_events=3, window_seconds=60, clock=FakeClock())
        assert [limiter.allow(42) for _ in range(4)] == [True, True, True, False]

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_events=2, window_seconds=60, clock=clock)
        limiter.allow(42)
        clock.now += 30
        limiter.allow(42)
        assert limiter.allow(42) is False
        clock.now += 31  # first event is now outside the window
        assert limiter.allow(42) is True

    def test_keys_are_independent(self):
        limiter = RateLimiter(max_events=1, window_seconds=60, clock=FakeClock())
        assert limiter.allow("a") is True
        assert limiter.allow("b") is True
        assert limiter.allow("a") is False
