from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import CrawlResult


class StorageBase(ABC):
    """Abstract base class for crawl result sinks.

    Subclasses must implement write() and close().
    """

    @abstractmethod
    def write(self, result: CrawlResult) -> None:
        """Persist a single crawl result."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


class MemoryResultStorage(StorageBase):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: List[CrawlResult] = []

    def write(self, result: CrawlResult) -> None:
        with self._lock:
            self.results.append(result)

    def close(self) -> None:
        pass


class JsonlResultStorage(StorageBase):
    """Appends crawl results to a .jsonl file from a background writer thread.

    The body is not written, only its size; ``include_body=True`` keeps it.
    """

    def __init__(self, path: str, include_body: bool = False) -> None:
        self._path = path
        self._include_body = include_body
        self._queue: queue.Queue[Optional[CrawlResult]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, name="jsonl-writer", daemon=True)
        self._thread.start()

    def write(self, result: CrawlResult) -> None:
        self._queue.put(result)

    def close(self) -> None:
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _record(self, result: CrawlResult) -> dict:
        record = {
            "timestamp": time.time(),
            "url": result.url,
            "unique_key": result.request.unique_key,
            "depth": result.request.depth,
            "parent_url": result.request.parent_url,
            "status_code": result.status_code,
            "content_type": result.content_type,
            "size_bytes": result.size_bytes,
            "latency_ms": result.latency_ms,
            "session_id": result.session_id,
            "links": len(result.links),
            "scraped_content": result.scraped_content,
        }
        if self._include_body:
            record["body"] = result.body
        return record

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                f.write(json.dumps(self._record(item), ensure_ascii=False, default=str) + "\n")
                f.flush()
