from __future__ import annotations

import random
from typing import Optional


class BackoffStrategy:
    """Exponential backoff with jitter for request retries.

    Sleep is base * 2^(attempt-1) capped at max_seconds, plus up to 10% jitter.
    Retries after an anti-bot block start from a larger base."""

    def __init__(
        self,
        base_seconds: float = 0.5,
        max_seconds: float = 10.0,
        blocked_base_seconds: float = 2.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._blocked_base = blocked_base_seconds
        self._rng = rng or random.Random()

    def get_sleep(self, attempt: int, error_type: Optional[str] = None) -> float:
        """Backoff duration in seconds before retry number ``attempt`` (1-based)."""
        base = self._blocked_base if error_type == "AntiBotError" else self._base
        exp = min(self._max, base * (2 ** max(attempt - 1, 0)))
        return exp + self._rng.uniform(0, exp * 0.1)
