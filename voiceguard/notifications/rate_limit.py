"""Per-channel sliding-window rate limiting."""

from collections import deque
from typing import Any, Deque, Dict, Hashable

from voiceguard.clock import Clock, system_clock


class SlidingWindowLimiter:
    """Counts sends per key over a trailing window.

    ``record`` is called once per delivery attempt; ``is_limited``
    reports whether the key has already reached ``limit`` sends in the
    last ``window_seconds``.
    """

    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Clock = system_clock):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Dict[Hashable, Deque[float]] = {}
        self._total_rejected = 0

    def is_limited(self, key: Hashable) -> bool:
        events = self._prune(key, self._clock())
        limited = len(events) >= self.limit
        if limited:
            self._total_rejected += 1
        return limited

    def record(self, key: Hashable) -> None:
        now = self._clock()
        self._prune(key, now).append(now)

    def count(self, key: Hashable) -> int:
        return len(self._prune(key, self._clock()))

    def sweep(self) -> int:
        """Prune every key and drop the empty ones. Returns keys removed."""
        now = self._clock()
        empty = [key for key in list(self._events) if not self._prune(key, now)]
        for key in empty:
            del self._events[key]
        return len(empty)

    def reset(self) -> None:
        self._events.clear()
        self._total_rejected = 0

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "total_rejected": self._total_rejected,
            "tracked_keys": len(self._events),
        }

    def _prune(self, key: Hashable, now: float) -> Deque[float]:
        events = self._events.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()
        return events
