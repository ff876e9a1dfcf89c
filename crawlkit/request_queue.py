from __future__ import annotations

import heapq
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import redis

from .models import CrawlRequest, QueueOperationInfo, QueueStats
from .normalizer import normalize_unique_key
from .queue_strategy import QueueStrategy

logger = logging.getLogger(__name__)

# KEYS: data, pending. ARGV: unique_key, payload, score.
ADD_REQUEST_SCRIPT = """
if redis.call("HSETNX", KEYS[1], ARGV[1], ARGV[2]) == 0 then
    return 0
end
redis.call("ZADD", KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: pending, data, in_progress. Returns the payload, or nil when nothing is pending.
FETCH_NEXT_SCRIPT = """
while true do
    local popped = redis.call("ZPOPMIN", KEYS[1])
    if #popped == 0 then
        return nil
    end
    local raw = redis.call("HGET", KEYS[2], popped[1])
    if raw then
        redis.call("SADD", KEYS[3], popped[1])
        return raw
    end
end
"""


class QueueBackend(ABC):
    """Storage for request state: pending, in progress, completed, failed.

    Implementations must never hold two entries with the same unique key and
    must hand each pending item to exactly one caller of fetch_next().
    """

    name = ""

    @abstractmethod
    def was_already_processed(self, unique_key: str) -> bool:
        """True if the key is pending, in progress, completed or failed."""

    @abstractmethod
    def add_request(self, request: CrawlRequest) -> None:
        ...

    @abstractmethod
    def fetch_next(self) -> Optional[CrawlRequest]:
        ...

    @abstractmethod
    def mark_completed(self, unique_key: str) -> None:
        ...

    @abstractmethod
    def mark_failed(self, unique_key: str) -> None:
        ...

    @abstractmethod
    def get_stats(self) -> QueueStats:
        ...

    def is_empty(self) -> bool:
        return self.get_stats().pending == 0


class InMemoryQueue(QueueBackend):
    """Process-local backend: an arena of requests plus a heap index.

    Loses all state on restart.
    """

    name = "memory"

    def __init__(self, strategy: QueueStrategy) -> None:
        self._strategy = strategy
        self._lock = threading.Lock()
        self._counter = 0
        self._requests: Dict[str, CrawlRequest] = {}
        self._index: List[Tuple[float, int, str]] = []
        self._in_progress: Set[str] = set()
        self._completed: Set[str] = set()
        self._failed: Set[str] = set()

    def was_already_processed(self, unique_key: str) -> bool:
        with self._lock:
            return self._seen(unique_key)

    def _seen(self, unique_key: str) -> bool:
        return (
            unique_key in self._requests
            or unique_key in self._completed
            or unique_key in self._failed
        )

    def add_request(self, request: CrawlRequest) -> None:
        with self._lock:
            if self._seen(request.unique_key):
                return
            self._counter += 1
            score = self._strategy.get_score(self._counter)
            self._requests[request.unique_key] = request
            heapq.heappush(self._index, (score, self._counter, request.unique_key))

    def fetch_next(self) -> Optional[CrawlRequest]:
        with self._lock:
            while self._index:
                _, _, key = heapq.heappop(self._index)
                request = self._requests.get(key)
                if request is None or key in self._in_progress:
                    continue
                self._in_progress.add(key)
                return request
            return None

    def _finish(self, unique_key: str, terminal: Set[str]) -> None:
        with self._lock:
            self._in_progress.discard(unique_key)
            self._requests.pop(unique_key, None)
            terminal.add(unique_key)

    def mark_completed(self, unique_key: str) -> None:
        self._finish(unique_key, self._completed)

    def mark_failed(self, unique_key: str) -> None:
        self._finish(unique_key, self._failed)

    def get_stats(self) -> QueueStats:
        with self._lock:
            return QueueStats(
                pending=len(self._requests) - len(self._in_progress),
                completed=len(self._completed),
                failed=len(self._failed),
                in_progress=len(self._in_progress),
            )


class RedisQueue(QueueBackend):
    """Durable backend on a Redis sorted set.

    Keys for queue ``<id>``::

        crawler:queue:<id>:pending      ZSET  unique_key -> score
        crawler:queue:<id>:data         HASH  unique_key -> JSON CrawlRequest
        crawler:queue:<id>:in_progress  SET
        crawler:queue:<id>:completed    SET
        crawler:queue:<id>:failed       SET
        crawler:queue:<id>:counter      STRING (INCR)

    Enqueue (HSETNX + ZADD) and dequeue (ZPOPMIN + HGET + SADD in_progress)
    each run as one Lua script, so a process dying mid-call never leaves a key
    that is known but neither pending nor in progress. The counter lives in
    Redis so ordering holds across restarts.
    """

    name = "redis"

    def __init__(self, client: "redis.Redis", queue_id: str, strategy: QueueStrategy) -> None:
        self._redis = client
        self._queue_id = queue_id
        self._strategy = strategy
        prefix = f"crawler:queue:{queue_id}"
        self._keys = {
            "pending": f"{prefix}:pending",
            "data": f"{prefix}:data",
            "in_progress": f"{prefix}:in_progress",
            "completed": f"{prefix}:completed",
            "failed": f"{prefix}:failed",
            "counter": f"{prefix}:counter",
        }
        self._add_script = client.register_script(ADD_REQUEST_SCRIPT)
        self._fetch_script = client.register_script(FETCH_NEXT_SCRIPT)

    @property
    def keys(self) -> Dict[str, str]:
        return dict(self._keys)

    def was_already_processed(self, unique_key: str) -> bool:
        k = self._keys
        pipe = self._redis.pipeline(transaction=False)
        pipe.sismember(k["completed"], unique_key)
        pipe.sismember(k["failed"], unique_key)
        pipe.hexists(k["data"], unique_key)
        return any(bool(v) for v in pipe.execute())

    def add_request(self, request: CrawlRequest) -> None:
        k = self._keys
        payload = json.dumps(request.to_dict(), ensure_ascii=False)
        # A counter value burned by a crash or a lost HSETNX race is only a gap.
        insertion_index = int(self._redis.incr(k["counter"]))
        score = self._strategy.get_score(insertion_index)
        self._add_script(keys=[k["data"], k["pending"]], args=[request.unique_key, payload, score])

    def fetch_next(self) -> Optional[CrawlRequest]:
        k = self._keys
        raw = self._fetch_script(keys=[k["pending"], k["data"], k["in_progress"]])
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return CrawlRequest.from_dict(json.loads(raw))

    def _finish(self, unique_key: str, terminal_key: str) -> None:
        k = self._keys
        pipe = self._redis.pipeline(transaction=True)
        pipe.sadd(terminal_key, unique_key)
        pipe.srem(k["in_progress"], unique_key)
        pipe.hdel(k["data"], unique_key)
        pipe.zrem(k["pending"], unique_key)
        pipe.execute()

    def mark_completed(self, unique_key: str) -> None:
        self._finish(unique_key, self._keys["completed"])

    def mark_failed(self, unique_key: str) -> None:
        self._finish(unique_key, self._keys["failed"])

    def get_stats(self) -> QueueStats:
        k = self._keys
        pipe = self._redis.pipeline(transaction=False)
        pipe.zcard(k["pending"])
        pipe.scard(k["completed"])
        pipe.scard(k["failed"])
        pipe.scard(k["in_progress"])
        pending, completed, failed, in_progress = (int(v or 0) for v in pipe.execute())
        return QueueStats(pending=pending, completed=completed, failed=failed, in_progress=in_progress)

    def recover_in_progress(self) -> int:
        """Requeue keys that were in flight when a previous process died."""
        k = self._keys
        recovered = 0
        for member in self._redis.smembers(k["in_progress"]):
            unique_key = member.decode("utf-8") if isinstance(member, bytes) else str(member)
            # Requeue before clearing the in-progress mark; a crash in between is retried next start.
            if self._redis.hexists(k["data"], unique_key):
                insertion_index = int(self._redis.incr(k["counter"]))
                self._redis.zadd(k["pending"], {unique_key: self._strategy.get_score(insertion_index)})
                recovered += 1
            self._redis.srem(k["in_progress"], unique_key)
        if recovered:
            logger.info("Recovered %d in-progress requests for queue %s", recovered, self._queue_id)
        return recovered


class PersistentRequestQueue:
    """Deduplicating request queue over a Redis or in-memory backend.

    Redis is used when a client or URL is given and answers PING; otherwise
    the in-memory backend takes over with the same semantics.
    """

    def __init__(
        self,
        queue_id: str,
        strategy: QueueStrategy,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        recover: bool = True,
    ) -> None:
        self._queue_id = queue_id
        self._strategy = strategy
        self._backend = self._select_backend(redis_client, redis_url, recover)

    def _select_backend(self, client: Optional[Any], url: Optional[str], recover: bool) -> QueueBackend:
        if client is None and url:
            client = redis.Redis.from_url(url)
        if client is not None:
            try:
                client.ping()
            except redis.exceptions.RedisError as exc:
                logger.warning(
                    "Redis unavailable for queue %s (%s); using in-memory queue",
                    self._queue_id,
                    exc,
                )
            else:
                backend = RedisQueue(client, self._queue_id, self._strategy)
                if recover:
                    backend.recover_in_progress()
                return backend
        return InMemoryQueue(self._strategy)

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def queue_id(self) -> str:
        return self._queue_id

    def build_request(self, url: str, **fields: Any) -> CrawlRequest:
        return CrawlRequest(url=url, unique_key=normalize_unique_key(url), **fields)

    def add_request(self, request: CrawlRequest) -> QueueOperationInfo:
        key = request.unique_key
        if self._backend.was_already_processed(key):
            return QueueOperationInfo(was_already_present=True, unique_key=key)
        self._backend.add_request(request)
        return QueueOperationInfo(was_already_present=False, unique_key=key)

    def add_url(self, url: str, **fields: Any) -> QueueOperationInfo:
        return self.add_request(self.build_request(url, **fields))

    def add_requests(self, requests: Iterable[CrawlRequest], batch_size: int = 25) -> List[QueueOperationInfo]:
        results: List[QueueOperationInfo] = []
        batch: List[CrawlRequest] = []
        for request in requests:
            batch.append(request)
            if len(batch) >= batch_size:
                results.extend(self.add_request(r) for r in batch)
                batch = []
        results.extend(self.add_request(r) for r in batch)
        return results

    def fetch_next(self) -> Optional[CrawlRequest]:
        return self._backend.fetch_next()

    def mark_completed(self, unique_key: str) -> None:
        self._backend.mark_completed(unique_key)

    def mark_failed(self, unique_key: str) -> None:
        self._backend.mark_failed(unique_key)

    def was_already_processed(self, unique_key: str) -> bool:
        return self._backend.was_already_processed(unique_key)

    def get_stats(self) -> QueueStats:
        return self._backend.get_stats()

    def is_empty(self) -> bool:
        return self._backend.is_empty()
