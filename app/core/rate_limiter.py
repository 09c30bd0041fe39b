"""
Request Rate Limiter: in-memory sliding windows
===============================================

Buckets:
  1. Per-IP:          rate_limit_ip_max requests per window
  2. Per-IP auth:     rate_limit_auth_ip_max POSTs to /api/auth/* per window
  3. Per-identity:    rate_limit_identity_max requests per window per session subject

Windows live in a TTLCache so idle keys age out instead of accumulating.
State is process-local and resets on restart; it is a best-effort throttle,
not an accounting ledger.
"""
from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Optional

from cachetools import TTLCache

from app.config import Settings

_MAX_TRACKED_KEYS = 100_000


class _SlidingWindow:
    """Thread-safe sliding-window counter for a single key."""

    __slots__ = ("_timestamps", "_lock")

    def __init__(self):
        self._timestamps: list[float] = []
        self._lock = Lock()

    def count_in_window(self, window_s: float, now: float) -> int:
        cutoff = now - window_s
        with self._lock:
            self._timestamps = [t for t in self._timestamps if t > cutoff]
            return len(self._timestamps)

    def try_acquire(self, window_s: float, limit: int, now: float) -> bool:
        """Record an event if the window has room. Returns False when full."""
        cutoff = now - window_s
        with self._lock:
            self._timestamps = [t for t in self._timestamps if t > cutoff]
            if len(self._timestamps) >= limit:
                return False
            self._timestamps.append(now)
            return True

    def retry_after(self, window_s: float, now: float) -> float:
        with self._lock:
            if not self._timestamps:
                return 0.0
            return max(0.0, self._timestamps[0] + window_s - now)


class RateLimiter:
    """Keyed sliding-window limiter shared by all requests of the process."""

    def __init__(self, settings: Settings, clock: Optional[Callable[[], float]] = None):
        self.window_s = settings.rate_limit_window_s
        self.limits = {
            "ip": settings.rate_limit_ip_max,
            "auth_ip": settings.rate_limit_auth_ip_max,
            "identity": settings.rate_limit_identity_max,
        }
        self._clock = clock or time.time
        self._windows: TTLCache = TTLCache(maxsize=_MAX_TRACKED_KEYS, ttl=self.window_s * 2)
        self._lock = Lock()

    def _window(self, key: str) -> _SlidingWindow:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = _SlidingWindow()
            # Re-insert to refresh the TTL on activity
            self._windows[key] = window
            return window

    def hit(self, bucket: str, key: str) -> Optional[int]:
        """Record a request in *bucket* for *key*.

        Returns None when allowed, otherwise the Retry-After in whole seconds.
        """
        limit = self.limits[bucket]
        now = self._clock()
        window = self._window(f"{bucket}:{key}")
        if window.try_acquire(self.window_s, limit, now):
            return None
        return max(1, int(window.retry_after(self.window_s, now) + 0.999))

    def count(self, bucket: str, key: str) -> int:
        return self._window(f"{bucket}:{key}").count_in_window(self.window_s, self._clock())

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
