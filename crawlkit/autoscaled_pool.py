from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable, Iterable, Optional

from .controller import ConcurrencyController
from .metrics import MetricsCollector
from .resource_monitor import Snapshotter
from .strategies import ScaleDownStrategy, ScaleUpStrategy, ScalingSignal, ScalingStrategy

logger = logging.getLogger(__name__)


class AutoscaledPool:
    """Runs ``task_fn`` on a worker pool whose size follows system load.

    A scaler thread calls ``tick()`` every ``scale_interval_secs``; each tick
    reads the latest resource snapshot, the backlog and the active worker
    count, then applies the first matching strategy (one step at most).
    """

    def __init__(
        self,
        task_fn: Callable[[], None],
        is_task_ready_fn: Callable[[], bool] = lambda: True,
        is_finished_fn: Callable[[], bool] = lambda: False,
        backlog_fn: Callable[[], int] = lambda: 0,
        min_concurrency: int = 1,
        max_concurrency: int = 10,
        snapshotter: Optional[Snapshotter] = None,
        metrics: Optional[MetricsCollector] = None,
        strategies: Optional[Iterable[ScalingStrategy]] = None,
        scale_interval_secs: float = 0.5,
        metrics_window_secs: int = 15,
        poll_interval_secs: float = 0.01,
    ) -> None:
        self._task_fn = task_fn
        self._is_task_ready = is_task_ready_fn
        self._is_finished = is_finished_fn
        self._backlog = backlog_fn
        self._min = max(1, min_concurrency)
        self._max = max(self._min, max_concurrency)
        self._snapshotter = snapshotter or Snapshotter()
        self._metrics = metrics
        self._strategies = list(strategies) if strategies is not None else [
            ScaleDownStrategy(self._min, self._max),
            ScaleUpStrategy(self._min, self._max),
        ]
        self._scale_interval = scale_interval_secs
        self._metrics_window = metrics_window_secs
        self._poll_interval = poll_interval_secs

        self._controller = ConcurrencyController(max_workers=self._max, initial_limit=self._min)
        self._running = False
        self._paused = threading.Event()
        self._stop_event = threading.Event()
        self._scaler: Optional[threading.Thread] = None

    def run(self) -> None:
        """Dispatch until finished or stopped, then wait for in-flight tasks."""
        if self._running:
            raise RuntimeError("Pool is already running")
        self._running = True
        self._stop_event.clear()
        self._snapshotter.start()
        self._scaler = threading.Thread(target=self._scale_loop, name="autoscaler", daemon=True)
        self._scaler.start()
        try:
            while not self._stop_event.is_set():
                if self._controller.active == 0 and self._is_finished():
                    break
                if (
                    not self._paused.is_set()
                    and self._controller.has_capacity
                    and self._is_task_ready()
                    and self._controller.try_submit(self._guarded_task) is not None
                ):
                    continue
                time.sleep(self._poll_interval)
        finally:
            self._stop_event.set()
            self._controller.stop(wait=True)
            if self._scaler is not None:
                self._scaler.join(timeout=max(1.0, self._scale_interval * 2))
            self._snapshotter.stop()
            self._running = False

    def _guarded_task(self) -> None:
        try:
            self._task_fn()
        except Exception:  # noqa: BLE001
            logger.exception("Worker task raised; continuing")

    def _scale_loop(self) -> None:
        while not self._stop_event.wait(self._scale_interval):
            self.tick()

    def tick(self) -> Optional[str]:
        """Evaluate strategies once; return the name of the one applied, if any."""
        signal = self.current_signal()
        for strat in self._strategies:
            if strat.should_apply(signal):
                old_limit = self._controller.limit
                strat.apply(self._controller, signal)
                new_limit = self._controller.limit
                log = {
                    "timestamp": time.time(),
                    "strategy": strat.__class__.__name__,
                    "old_limit": old_limit,
                    "new_limit": new_limit,
                    "reason": {
                        "lag_overloaded": signal.lag_overloaded,
                        "memory_overloaded": signal.memory_overloaded,
                        "backlog": signal.backlog,
                        "active": signal.active,
                        "rate_429": round(signal.rate_429, 4),
                    },
                }
                logger.info(json.dumps(log, ensure_ascii=False))
                return strat.__class__.__name__
        return None

    def current_signal(self) -> ScalingSignal:
        rate_429 = 0.0
        if self._metrics is not None:
            rate_429 = self._metrics.snapshot(self._metrics_window).rate_429
        return ScalingSignal(
            lag_overloaded=self._snapshotter.is_lag_overloaded(),
            memory_overloaded=self._snapshotter.is_memory_overloaded(),
            backlog=self._backlog(),
            active=self._controller.active,
            limit=self._controller.limit,
            rate_429=rate_429,
        )

    def stop(self) -> None:
        """Withhold further dispatch; run() returns once in-flight tasks finish."""
        self._stop_event.set()

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    @property
    def desired_concurrency(self) -> int:
        return self._controller.limit

    @property
    def current_concurrency(self) -> int:
        return self._controller.active
