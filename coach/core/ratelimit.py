"""
Coach Assistant - Keyed TTL store and per-chat rate limiting.

State that used to live in process-wide dictionaries (who sent how many
messages recently) is held in an explicit store object that is injected
where it is needed. The clock is injectable so tests can move time by hand.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Generic, Hashable, TypeVar

V = TypeVar("V")

Clock = Callable[[], float]


class KeyedTTLStore(Generic[V]):
    """A dict whose entries expire `ttl_seconds` after they were written."""

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, V]] = {}

    def get(self, key: Hashable, default: V | None = None) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (self._clock() + self._ttl, value)

    def delete(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop all expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)


class RateLimiter:
    """Sliding-window limiter: at most `max_events` per key per `window_seconds`."""

    def __init__(
        self, max_events: int, window_seconds: float, clock: Clock = time.monotonic,
    ) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: KeyedTTLStore[deque] = KeyedTTLStore(window_seconds, clock)

    def allow(self, key: Hashable) -> bool:
        """Record an event for `key` if it is within the limit."""
        now = self._clock()
        events = self._events.get(key) or deque()
        while events and now - events[0] >= self.window_seconds:
            events.popleft()
        if len(events) >= self.max_events:
            self._events.set(key, events)
            return False
        events.append(now)
        self._events.set(key, events)
        return True
