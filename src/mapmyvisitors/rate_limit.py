"""
Fixed-window rate limiting.

Counters live in process memory. A restart resets them and separate
processes each keep their own, so this is abuse damping only. The monthly
pageview cap in the database is the billing-grade limit.
"""
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """In-memory fixed-window counter keyed by arbitrary strings. Thread-safe.

    The store is bounded by ``max_entries``: when it grows past the cap,
    expired entries are pruned first, then the oldest-inserted keys are
    evicted until the store is back under the cap.
    """

    def __init__(
        self,
        max_requests: int,
        window_sec: float = 60,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_requests = max_requests
        self.window_sec = window_sec
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def allow(self, key: str) -> bool:
        """Count a request for ``key``; return False once the window is exhausted."""
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now > entry.reset_at:
                # Re-insert so a renewed key counts as newest for eviction.
                self._entries.pop(key, None)
                self._entries[key] = RateLimitEntry(count=1, reset_at=now + self.window_sec)
                self._prune(now)
                return True

            if entry.count >= self.max_requests:
                return False
            entry.count += 1
            return True

    def reset(self) -> None:
        """Forget every counter."""
        with self._lock:
            self._entries.clear()

    def _prune(self, now: float) -> None:
        """Shrink the store back under ``max_entries``. Caller holds the lock."""
        if len(self._entries) <= self.max_entries:
            return

        expired = [k for k, e in self._entries.items() if now > e.reset_at]
        for key in expired:
            del self._entries[key]
            if len(self._entries) <= self.max_entries:
                return

        # Dicts keep insertion order, so the first keys are the oldest.
        overflow = len(self._entries) - self.max_entries
        for key in list(self._entries)[:overflow]:
            del self._entries[key]
