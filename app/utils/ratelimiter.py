"""In-memory rolling-window rate limiter for job starts.

Each queue lane (job name) owns one limiter. A worker must acquire a start
slot before it begins a job; at most ``limit`` starts are allowed within any
``window_seconds`` span, measured as a true rolling window (timestamps of
recent starts) rather than fixed buckets, so a burst at the end of one minute
cannot be followed by a second burst at the start of the next.

Usage pattern:
    limiter = RollingWindowRateLimiter(limit=5, window_seconds=60)
    if limiter.acquire(stop_event=stop, timeout=1.0):
        run_job()

Return semantics:
    try_acquire -> (allowed: bool, meta: dict)
        meta = {
            'limit': int,
            'remaining': int,
            'retry_after': float,   # seconds until the oldest start leaves the window
            'count': int,
        }

Thread-safety: a single lock guards the deque; waiting happens outside it.
Single-process only; a multi-process deployment would move the timestamps to
Redis (ZADD/ZREMRANGEBYSCORE) behind the same interface.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple


class RollingWindowRateLimiter:
    def __init__(self, limit: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._starts: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()

    def try_acquire(self) -> Tuple[bool, dict]:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._starts) < self.limit:
                self._starts.append(now)
                allowed = True
                retry_after = 0.0
            else:
                allowed = False
                retry_after = max(0.0, self._starts[0] + self.window_seconds - now)
            meta = {
                "limit": self.limit,
                "remaining": max(0, self.limit - len(self._starts)),
                "retry_after": retry_after,
                "count": len(self._starts),
            }
            return allowed, meta

    def acquire(self, *, stop_event: Optional[threading.Event] = None, timeout: Optional[float] = None) -> bool:
        """Block until a start slot is available.

        Returns False if ``timeout`` elapses or ``stop_event`` is set first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            allowed, meta = self.try_acquire()
            if allowed:
                return True
            wait = meta["retry_after"]
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            # Never spin; never oversleep past a stop request by more than a tick
            wait = max(wait, 0.01)
            if stop_event is not None:
                if stop_event.wait(wait):
                    return False
            else:
                time.sleep(wait)

    def snapshot(self) -> dict:
        with self._lock:
            self._evict(self._clock())
            return {
                "limit": self.limit,
                "window_seconds": self.window_seconds,
                "count": len(self._starts),
                "remaining": max(0, self.limit - len(self._starts)),
            }


__all__ = ["RollingWindowRateLimiter"]
