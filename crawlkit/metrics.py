from __future__ import annotations

import re
import time
from collections import deque
from dataclasses import asdict
from threading import Lock
from typing import Deque, Dict, List, Optional

from .models import MetricsSnapshot, RequestOutcome


class MetricsCollector:
    """Thread-safe collector for per-request crawl outcomes.

    Records RequestOutcome events and produces aggregated MetricsSnapshot
    objects over configurable sliding time windows."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[tuple[float, RequestOutcome]] = deque(maxlen=maxlen)

    def record(self, outcome: RequestOutcome, timestamp: Optional[float] = None) -> None:
        with self._lock:
            self._events.append((time.time() if timestamp is None else timestamp, outcome))

    def snapshot(self, window_secs: int, now: Optional[float] = None) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = time.time() if now is None else now
        cutoff = now - window_secs
        with self._lock:
            events: List[RequestOutcome] = [e for ts, e in self._events if ts >= cutoff]
        total = len(events)
        return MetricsSnapshot(
            window_secs=window_secs,
            total_requests=total,
            success_count=sum(1 for e in events if e.success),
            timeout_count=sum(1 for e in events if e.error_type == "RequestTimeoutError"),
            conn_error_count=sum(1 for e in events if e.error_type == "TransientFetchError"),
            http_429_count=sum(1 for e in events if e.status_code == 429),
            http_403_count=sum(1 for e in events if e.status_code == 403),
            blocked_count=sum(1 for e in events if e.error_type == "AntiBotError"),
            avg_latency_ms=(sum(e.latency_ms for e in events) / total) if total else 0.0,
            bytes_downloaded=sum(e.bytes_downloaded for e in events),
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **asdict(e)} for ts, e in self._events]


_NUMBER = re.compile(r"\d+(\.\d+)?")


class ErrorTracker:
    """Groups errors by signature so repeated failures collapse into counts.

    Numbers in messages are replaced with ``_``: "Timeout after 5000ms" and
    "Timeout after 3000ms" share the signature "RequestTimeoutError: Timeout after _ms".
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._groups: Dict[str, int] = {}
        self._total = 0

    @staticmethod
    def signature(error: BaseException) -> str:
        message = getattr(error, "message", None) or str(error)
        return f"{type(error).__name__}: {_NUMBER.sub('_', message)}"

    def add(self, error: BaseException) -> str:
        sig = self.signature(error)
        with self._lock:
            self._total += 1
            self._groups[sig] = self._groups.get(sig, 0) + 1
        return sig

    def groups(self) -> Dict[str, int]:
        with self._lock:
            return dict(sorted(self._groups.items(), key=lambda kv: (-kv[1], kv[0])))

    @property
    def total(self) -> int:
        return self._total
