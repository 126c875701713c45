"""Fixed-window rate limiting keyed by logical endpoint."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Tuple

from .errors import RateLimitExceeded

Clock = Callable[[], float]


class FixedWindowRateLimiter:
    """Allow at most ``max_events`` per key inside each ``window_seconds`` window."""

    def __init__(self, max_events: int, window_seconds: float, *, clock: Clock = time.monotonic) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str = "default") -> bool:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_events:
                self._windows[key] = (started, count)
                return False
            self._windows[key] = (started, count + 1)
            return True

    def acquire(self, key: str = "default") -> None:
        """Consume one slot for ``key`` or raise :class:`RateLimitExceeded`."""
        if not self.try_acquire(key):
            raise RateLimitExceeded(
                f"Rate limit exceeded for {key!r}: {self.max_events} per {self.window_seconds:g}s",
                details={"key": key, "retry_after": self.retry_after(key)},
            )

    def retry_after(self, key: str = "default") -> float:
        """Seconds until the current window for ``key`` resets."""
        with self._lock:
            window = self._windows.get(key)
        if window is None:
            return 0.0
        return max(window[0] + self.window_seconds - self._clock(), 0.0)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


__all__ = ["Clock", "FixedWindowRateLimiter"]
