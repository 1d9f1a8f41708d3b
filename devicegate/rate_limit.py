"""
Rate limiting module for DeviceGate.

Sliding-window limiting for the open fingerprint route (per client
address) and a token bucket that shields the ownership oracle.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Callable, Dict, Tuple, Optional
from dataclasses import dataclass


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter keyed by caller.

    Args:
        rpm: Maximum requests per window
        window_seconds: Window size in seconds (default 60)
        time_source: Monotonic time function, injectable for tests
    """

    def __init__(self, rpm: int, window_seconds: int = 60,
                 time_source: Callable[[], float] = time.monotonic):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._time = time_source
        self._hits: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.RLock()
        self._next_sweep = self._time() + self._window

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Record a hit for ``key`` unless the window is already full."""
        now = self._time()
        window_start = now - self._window

        with self._lock:
            if now >= self._next_sweep:
                # Keys of callers that went quiet would otherwise stay forever.
                self.cleanup_expired()
                self._next_sweep = now + self._window

            q = self._hits[key]
            while q and q[0] <= window_start:
                q.popleft()

            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=q[0] + self._window,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self._limit - len(q),
                reset_at=q[0] + self._window,
            )

    def cleanup_expired(self) -> int:
        """Drop expired hits from every key; returns how many were removed."""
        window_start = self._time() - self._window
        removed = 0
        with self._lock:
            for key in list(self._hits):
                q = self._hits[key]
                while q and q[0] <= window_start:
                    q.popleft()
                    removed += 1
                if not q:
                    del self._hits[key]
        return removed


class TokenBucketLimiter:
    """
    Token bucket: bursts up to ``capacity``, refilled at ``rate`` per second.
    """

    def __init__(self, rate: float, capacity: int,
                 time_source: Callable[[], float] = time.monotonic):
        self._rate = rate
        self._capacity = capacity
        self._time = time_source
        self._buckets: Dict[str, Tuple[float, float]] = {}  # key -> (tokens, last_update)
        self._lock = threading.RLock()

    def _refill(self, key: str, now: float) -> float:
        if key not in self._buckets:
            return float(self._capacity)
        tokens, last_update = self._buckets[key]
        return min(self._capacity, tokens + (now - last_update) * self._rate)

    def allow(self, key: str, tokens: int = 1) -> bool:
        now = self._time()
        with self._lock:
            current = self._refill(key, now)
            if current >= tokens:
                self._buckets[key] = (current - tokens, now)
                return True
            self._buckets[key] = (current, now)
            return False

    def retry_after(self, key: str, tokens: int = 1) -> float:
        """Seconds until ``tokens`` would be available for ``key``."""
        with self._lock:
            current = self._refill(key, self._time())
        if current >= tokens or self._rate <= 0:
            return 0.0
        return (tokens - current) / self._rate
