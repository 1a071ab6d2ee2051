from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, Dict

from logagg.api.schemas.common import MonotonicClock


class SlidingWindowRateLimiter:
    """
    Per-identity sliding-window admission control (local to this process).

    For each identity we keep the admission times inside the trailing window.
    allow() prunes times older than now - window, then admits and records now
    iff fewer than `limit` remain. Identities left with no live times are
    dropped so memory tracks only active callers: the caller's own window on
    each call, and every idle identity at most once per window.
    """

    def __init__(self, limit: int, window_seconds: float, clock: MonotonicClock = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._limit = int(limit)
        self._window = float(window_seconds)
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = Lock()
        self._next_sweep = clock() + self._window

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> float:
        return self._window

    # PUBLIC_INTERFACE
    def allow(self, identity: str) -> bool:
        """Return True and record the call if identity is under its limit; never blocks on other identities."""
        now = self._clock()
        cutoff = now - self._window
        with self._lock:
            if now >= self._next_sweep:
                self._drop_idle(cutoff)
                self._next_sweep = now + self._window

            times = self._windows.get(identity)
            if times is not None:
                while times and times[0] <= cutoff:
                    times.popleft()
                if not times:
                    del self._windows[identity]
                    times = None

            if times is not None and len(times) >= self._limit:
                return False

            if times is None:
                times = deque()
                self._windows[identity] = times
            times.append(now)
            return True

    def retry_after(self, identity: str) -> float:
        """Seconds until the oldest live admission for identity leaves the window (0 if none)."""
        now = self._clock()
        with self._lock:
            times = self._windows.get(identity)
            if not times:
                return 0.0
            return max(0.0, times[0] + self._window - now)

    def _drop_idle(self, cutoff: float) -> int:
        # Caller holds self._lock.
        idle = [ident for ident, times in self._windows.items() if not times or times[-1] <= cutoff]
        for ident in idle:
            del self._windows[ident]
        return len(idle)

    def prune(self) -> int:
        """Drop identities with no live admissions; returns how many were dropped."""
        cutoff = self._clock() - self._window
        with self._lock:
            return self._drop_idle(cutoff)

    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._windows)
