from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

import psutil

from .models import ResourceSnapshot

logger = logging.getLogger(__name__)


def process_memory() -> Tuple[int, int]:
    """(resident bytes of this process, total system memory)."""
    rss = psutil.Process(os.getpid()).memory_info().rss
    return rss, psutil.virtual_memory().total


class Snapshotter:
    """Samples scheduler lag and memory usage on a fixed interval.

    Lag is how late a tick arrives compared with the configured interval. When
    worker threads starve the interpreter the sampling thread wakes up late,
    which is the threaded counterpart of event-loop lag.

    ``tick()`` may be called directly with an explicit ``now`` so tests drive
    the sampler without real waiting.
    """

    def __init__(
        self,
        interval_secs: float = 0.5,
        max_lag_ms: float = 50.0,
        max_memory_ratio: float = 0.7,
        history_secs: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        memory_reader: Callable[[], Tuple[int, int]] = process_memory,
    ) -> None:
        self._interval = interval_secs
        self._max_lag_ms = max_lag_ms
        self._max_memory_ratio = max_memory_ratio
        self._history_secs = history_secs
        self._clock = clock
        self._memory_reader = memory_reader
        self._lock = threading.Lock()
        self._snapshots: Deque[ResourceSnapshot] = deque()
        self._last_tick: Optional[float] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="snapshotter", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self._interval * 2))
            self._thread = None
        self._last_tick = None

    def _loop(self) -> None:
        self.tick()
        while not self._stop_event.wait(self._interval):
            self.tick()

    def tick(self, now: Optional[float] = None) -> ResourceSnapshot:
        now = self._clock() if now is None else now
        with self._lock:
            if self._last_tick is None:
                lag_ms = 0.0
            else:
                lag_ms = max(0.0, (now - self._last_tick - self._interval) * 1000.0)
            self._last_tick = now

        used, total = self._memory_reader()
        ratio = used / total if total else 0.0
        snapshot = ResourceSnapshot(
            created_at=now,
            lag_ms=lag_ms,
            lag_overloaded=lag_ms > self._max_lag_ms,
            used_bytes=used,
            total_bytes=total,
            memory_ratio=ratio,
            memory_overloaded=ratio > self._max_memory_ratio,
        )
        with self._lock:
            self._snapshots.append(snapshot)
            cutoff = now - self._history_secs
            while self._snapshots and self._snapshots[0].created_at < cutoff:
                self._snapshots.popleft()
        return snapshot

    def latest(self) -> Optional[ResourceSnapshot]:
        with self._lock:
            return self._snapshots[-1] if self._snapshots else None

    def sample(self, sample_secs: float = 5.0, now: Optional[float] = None) -> List[ResourceSnapshot]:
        with self._lock:
            if not self._snapshots:
                return []
            now = self._snapshots[-1].created_at if now is None else now
            cutoff = now - sample_secs
            return [s for s in self._snapshots if s.created_at >= cutoff]

    def is_lag_overloaded(self, sample_secs: float = 5.0, threshold: float = 0.5) -> bool:
        sample = self.sample(sample_secs)
        if not sample:
            return False
        return sum(1 for s in sample if s.lag_overloaded) / len(sample) > threshold

    def is_memory_overloaded(self, sample_secs: float = 5.0, threshold: float = 0.5) -> bool:
        sample = self.sample(sample_secs)
        if not sample:
            return False
        return sum(1 for s in sample if s.memory_overloaded) / len(sample) > threshold
