"""Time-to-live cache of recently sent notification keys."""

from typing import Dict

from voiceguard.clock import Clock, system_clock


class DedupCache:
    """Remembers keys for ``ttl_seconds`` after they were last marked."""

    def __init__(self, ttl_seconds: float, clock: Clock = system_clock):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}

    def seen_recently(self, key: str) -> bool:
        marked_at = self._entries.get(key)
        return marked_at is not None and self._clock() - marked_at < self.ttl_seconds

    def mark(self, key: str) -> None:
        self._entries[key] = self._clock()

    def sweep(self) -> int:
        """Drop expired keys. Returns the number removed."""
        now = self._clock()
        expired = [k for k, t in self._entries.items() if now - t >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
