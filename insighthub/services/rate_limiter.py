"""
Rate Limiter — fixed-window chat quota per actor.

The window opens on an actor's first call and resets entirely once it
elapses (no sliding). State lives in process memory only; a restart gives
everyone a fresh quota.
"""

import logging
import threading
import time
from typing import Callable, Dict, NamedTuple

logger = logging.getLogger(__name__)


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds


class _Window:
    __slots__ = ("count", "window_start", "reset_at")

    def __init__(self, count: int, window_start: float, reset_at: float):
        self.count = count
        self.window_start = window_start
        self.reset_at = reset_at


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check_rate_limit(self, actor_id: str) -> RateLimitResult:
        """Count one call for the actor and report whether it is allowed."""
        key = str(actor_id)
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)

            if window is None or now >= window.reset_at:
                window = _Window(1, now, now + self.window_seconds)
                self._windows[key] = window
                return RateLimitResult(True, self.max_requests - 1, window.reset_at)

            if window.count >= self.max_requests:
                return RateLimitResult(False, 0, window.reset_at)

            window.count += 1
            return RateLimitResult(True, self.max_requests - window.count, window.reset_at)

    def get_remaining(self, actor_id: str) -> int:
        with self._lock:
            window = self._windows.get(str(actor_id))
            if window is None or self._clock() >= window.reset_at:
                return self.max_requests
            return max(0, self.max_requests - window.count)

    def get_time_until_reset(self, actor_id: str) -> int:
        """Milliseconds until the actor's window resets; 0 when no window is open."""
        with self._lock:
            window = self._windows.get(str(actor_id))
            if window is None:
                return 0
            remaining = window.reset_at - self._clock()
            return int(remaining * 1000) if remaining > 0 else 0

    def reset(self, actor_id: str) -> None:
        with self._lock:
            self._windows.pop(str(actor_id), None)

    def cleanup_expired(self) -> int:
        """Drop elapsed windows. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, w in self._windows.items() if now >= w.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter: dropped {len(expired)} expired windows")
        return len(expired)

    def size(self) -> int:
        return len(self._windows)
