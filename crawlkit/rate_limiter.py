from __future__ import annotations

import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class DomainRateLimiter:
    """Thread-safe per-domain sliding-window limiter with politeness jitter.

    Calling acquire(domain) blocks the current thread until the domain has a
    free slot in the last 60 seconds, then sleeps a random jitter. Expired
    window entries are dropped by cleanup(), which acquire() drives; there is
    no background timer to start or stop."""

    WINDOW_SECS = 60.0

    def __init__(
        self,
        max_per_minute: int = 60,
        jitter_secs: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._max = max(0, max_per_minute)
        self._jitter = max(0.0, jitter_secs)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[float]] = {}

    def acquire(self, domain: str) -> float:
        """Block until a request to ``domain`` is permitted; return seconds waited."""
        waited = 0.0
        if self._max > 0:
            while True:
                with self._lock:
                    now = self._clock()
                    self._cleanup_locked(now)
                    window = self._windows.setdefault(domain, deque())
                    if len(window) < self._max:
                        window.append(now)
                        break
                    wait = window[0] + self.WINDOW_SECS - now
                self._sleep(max(wait, 0.001))
                waited += max(wait, 0.001)
        if self._jitter > 0:
            jitter = self._rng.uniform(0, self._jitter)
            self._sleep(jitter)
            waited += jitter
        return waited

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop expired window entries and empty domains; return domains removed."""
        with self._lock:
            return self._cleanup_locked(self._clock() if now is None else now)

    def _cleanup_locked(self, now: float) -> int:
        cutoff = now - self.WINDOW_SECS
        removed = 0
        for domain in list(self._windows):
            window = self._windows[domain]
            while window and window[0] <= cutoff:
                window.popleft()
            if not window:
                del self._windows[domain]
                removed += 1
        return removed

    def in_window(self, domain: str) -> int:
        with self._lock:
            return len(self._windows.get(domain, ()))
