from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from .controller import ConcurrencyController


@dataclass(frozen=True)
class ScalingSignal:
    """Everything one scaling decision looks at."""

    lag_overloaded: bool
    memory_overloaded: bool
    backlog: int
    active: int
    limit: int
    rate_429: float = 0.0


class ScalingStrategy(ABC):
    """Evaluates a ScalingSignal and decides whether to move the limit.

    Every strategy moves the limit by at most one step per application.
    """

    def __init__(self, min_concurrency: int = 1, max_concurrency: int = 10) -> None:
        self._min = max(1, min_concurrency)
        self._max = max(self._min, max_concurrency)

    @abstractmethod
    def should_apply(self, signal: ScalingSignal) -> bool:
        """Return True if this strategy should be activated for the signal."""
        raise NotImplementedError

    @abstractmethod
    def apply(self, controller: ConcurrencyController, signal: ScalingSignal) -> None:
        """Execute the strategy's adjustment on the controller."""
        raise NotImplementedError


class ScaleDownStrategy(ScalingStrategy):
    """Shrinks concurrency under lag or memory pressure, or when rate limited."""

    def __init__(self, min_concurrency: int = 1, max_concurrency: int = 10, threshold_429: float = 0.05) -> None:
        super().__init__(min_concurrency, max_concurrency)
        self._threshold_429 = threshold_429

    def should_apply(self, signal: ScalingSignal) -> bool:
        if signal.limit <= self._min:
            return False
        return signal.lag_overloaded or signal.memory_overloaded or signal.rate_429 >= self._threshold_429

    def apply(self, controller: ConcurrencyController, signal: ScalingSignal) -> None:
        controller.set_concurrency_limit(max(self._min, controller.limit - 1))


class ScaleUpStrategy(ScalingStrategy):
    """Grows concurrency while resources are healthy and work is waiting."""

    def should_apply(self, signal: ScalingSignal) -> bool:
        if signal.limit >= self._max:
            return False
        if signal.lag_overloaded or signal.memory_overloaded:
            return False
        return signal.backlog > 0 and signal.active >= signal.limit

    def apply(self, controller: ConcurrencyController, signal: ScalingSignal) -> None:
        controller.set_concurrency_limit(min(self._max, controller.limit + 1))
