from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional

from .errors import ValidationError
from .models import JobStats, ResourceLimits, StopDecision

_CONTINUE = StopDecision(stop=False, reason="continue")


class JobResourceLimiter:
    """Decides whether a running job has used up its page, time or byte budget.

    Limits are checked in a fixed order (pages, duration, bytes) and the first
    one reached wins. A limit of None is unlimited.
    """

    def __init__(self, limits: Optional[ResourceLimits] = None) -> None:
        self._limits = limits or ResourceLimits()

    @property
    def limits(self) -> ResourceLimits:
        return self._limits

    def set_limits(self, **partial: Any) -> ResourceLimits:
        unknown = set(partial) - {"max_pages", "max_duration_secs", "max_bytes"}
        if unknown:
            raise ValidationError(f"unknown limits: {sorted(unknown)}")
        self._limits = replace(self._limits, **partial)
        return self._limits

    def should_stop(self, stats: JobStats) -> StopDecision:
        limits = self._limits
        if limits.max_pages is not None and stats.pages_crawled >= limits.max_pages:
            return StopDecision(
                stop=True,
                reason=f"Page limit reached ({stats.pages_crawled}/{limits.max_pages})",
            )
        if limits.max_duration_secs is not None and stats.elapsed_ms >= limits.max_duration_secs * 1000:
            return StopDecision(
                stop=True,
                reason=f"Duration limit reached ({stats.elapsed_ms / 1000:.1f}s/{limits.max_duration_secs}s)",
            )
        if limits.max_bytes is not None and stats.bytes_downloaded >= limits.max_bytes:
            return StopDecision(
                stop=True,
                reason=f"Byte limit reached ({stats.bytes_downloaded}/{limits.max_bytes} bytes)",
            )
        return _CONTINUE
