from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ConcurrencyController:
    """Bounded thread pool whose effective concurrency can change at runtime.

    Lowering the limit only withholds new dispatch; work already running is
    never cancelled. A slot is released in ``finally`` so a failing or timed
    out task cannot leak it.
    """

    def __init__(self, max_workers: int, initial_limit: int) -> None:
        self._max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="crawl-worker")

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)

        self._limit = min(self._max_workers, max(1, initial_limit))
        self._active = 0
        self._running = True

    def try_submit(self, fn: Callable[[], None]) -> Optional[Future]:
        """Dispatch ``fn`` if a slot is free; return None otherwise."""
        with self._cv:
            if not self._running or self._active >= self._limit:
                return None
            self._active += 1
        return self._executor.submit(self._wrap_task, fn)

    def _wrap_task(self, fn: Callable[[], None]) -> None:
        try:
            fn()
        finally:
            with self._cv:
                self._active = max(0, self._active - 1)
                self._cv.notify_all()

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait, cancel_futures=False)

    def set_concurrency_limit(self, new_limit: int) -> tuple[int, int]:
        """Change the limit (clamped to [1, max_workers]) and return (old, new)."""
        with self._cv:
            old_limit = self._limit
            self._limit = min(self._max_workers, max(1, int(new_limit)))
            self._cv.notify_all()
            return old_limit, self._limit

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def has_capacity(self) -> bool:
        return self._running and self._active < self._limit
