from __future__ import annotations

from abc import ABC, abstractmethod

from .errors import ValidationError


class QueueStrategy(ABC):
    """Maps a monotonic insertion index to a queue score (lowest first)."""

    name = ""

    @abstractmethod
    def get_score(self, insertion_index: int) -> float:
        raise NotImplementedError


class BfsStrategy(QueueStrategy):
    """FIFO: earlier insertions are dequeued first."""

    name = "bfs"

    def get_score(self, insertion_index: int) -> float:
        return float(insertion_index)


class DfsStrategy(QueueStrategy):
    """LIFO: the most recent insertion is dequeued first."""

    name = "dfs"

    def get_score(self, insertion_index: int) -> float:
        return float(-insertion_index)


_STRATEGIES = {"bfs": BfsStrategy, "dfs": DfsStrategy}


def create_queue_strategy(name: str) -> QueueStrategy:
    try:
        return _STRATEGIES[name.lower()]()
    except (KeyError, AttributeError):
        raise ValidationError(f"Unknown queue strategy: {name}") from None
