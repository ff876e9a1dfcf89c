"""Tests for PersistentRequestQueue and its backends."""

import threading
import unittest

import redis

from crawlkit.errors import ValidationError
from crawlkit.models import CrawlRequest
from crawlkit.normalizer import normalize_unique_key
from crawlkit.queue_strategy import BfsStrategy, DfsStrategy, create_queue_strategy
from crawlkit.request_queue import (
    ADD_REQUEST_SCRIPT,
    FETCH_NEXT_SCRIPT,
    InMemoryQueue,
    PersistentRequestQueue,
    RedisQueue,
)


class FakePipeline:
    """Queues calls against a FakeRedis and replays them on execute()."""

    def __init__(self, client):
        self._client = client
        self._calls = []

    def __getattr__(self, name):
        method = getattr(self._client, name)

        def record(*args, **kwargs):
            self._calls.append((method, args, kwargs))
            return self

        return record

    def execute(self):
        with self._client.lock:
            return [method(*args, **kwargs) for method, args, kwargs in self._calls]


class FakeScript:
    """A registered Lua script, replayed by a Python twin under the client lock.

    ``client.drop_connection`` makes the next call fail either before the
    script runs ("before") or after it ran but before the reply arrives ("after").
    """

    def __init__(self, client, body):
        self._client = client
        self._body = body

    def __call__(self, keys=(), args=(), client=None):
        with self._client.lock:
            when, self._client.drop_connection = self._client.drop_connection, None
            if when == "before":
                raise redis.exceptions.ConnectionError("connection lost")
            result = self._body(list(keys), list(args))
            if when == "after":
                raise redis.exceptions.ConnectionError("connection lost")
            return result


class FakeRedis:
    """The subset of redis.Redis the queue uses, with byte-valued reads."""

    def __init__(self, fail_ping=False):
        self.lock = threading.RLock()
        self.fail_ping = fail_ping
        self.drop_connection = None
        self.zsets = {}
        self.hashes = {}
        self.sets = {}
        self.counters = {}

    def ping(self):
        if self.fail_ping:
            raise redis.exceptions.ConnectionError("connection refused")
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def register_script(self, source):
        bodies = {ADD_REQUEST_SCRIPT: self._add_request, FETCH_NEXT_SCRIPT: self._fetch_next}
        return FakeScript(self, bodies[source])

    def _add_request(self, keys, args):
        data, pending = keys
        unique_key, payload, score = args
        if not self.hsetnx(data, unique_key, payload):
            return 0
        self.zadd(pending, {unique_key: float(score)})
        return 1

    def _fetch_next(self, keys, args):
        pending, data, in_progress = keys
        while True:
            popped = self.zpopmin(pending, 1)
            if not popped:
                return None
            unique_key = popped[0][0].decode("utf-8")
            raw = self.hget(data, unique_key)
            if raw is not None:
                self.sadd(in_progress, unique_key)
                return raw

    def zadd(self, key, mapping):
        with self.lock:
            self.zsets.setdefault(key, {}).update(mapping)
            return len(mapping)

    def zpopmin(self, key, count=1):
        with self.lock:
            zset = self.zsets.get(key, {})
            ordered = sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))[:count]
            for member, _ in ordered:
                del zset[member]
            return [(member.encode("utf-8"), score) for member, score in ordered]

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    def hsetnx(self, key, field, value):
        with self.lock:
            h = self.hashes.setdefault(key, {})
            if field in h:
                return 0
            h[field] = value
            return 1

    def hget(self, key, field):
        value = self.hashes.get(key, {}).get(field)
        return value.encode("utf-8") if value is not None else None

    def hdel(self, key, field):
        return 1 if self.hashes.get(key, {}).pop(field, None) is not None else 0

    def hexists(self, key, field):
        return field in self.hashes.get(key, {})

    def incr(self, key):
        with self.lock:
            self.counters[key] = self.counters.get(key, 0) + 1
            return self.counters[key]

    def sadd(self, key, member):
        s = self.sets.setdefault(key, set())
        added = member not in s
        s.add(member)
        return int(added)

    def srem(self, key, member):
        s = self.sets.get(key, set())
        removed = member in s
        s.discard(member)
        return int(removed)

    def smembers(self, key):
        return {m.encode("utf-8") for m in self.sets.get(key, set())}

    def scard(self, key):
        return len(self.sets.get(key, set()))

    def sismember(self, key, member):
        return member in self.sets.get(key, set())


def _request(url, depth=0):
    return CrawlRequest(url=url, unique_key=normalize_unique_key(url), depth=depth)


class TestQueueStrategy(unittest.TestCase):

    def test_bfs_scores_increase(self):
        s = BfsStrategy()
        self.assertLess(s.get_score(1), s.get_score(2))

    def test_dfs_scores_decrease(self):
        s = DfsStrategy()
        self.assertGreater(s.get_score(1), s.get_score(2))

    def test_factory(self):
        self.assertIsInstance(create_queue_strategy("BFS"), BfsStrategy)
        self.assertIsInstance(create_queue_strategy("dfs"), DfsStrategy)
        with self.assertRaises(ValidationError):
            create_queue_strategy("random")


class BackendContract:
    """Behaviour every backend must share. Subclasses provide make_queue()."""

    def make_queue(self, strategy):
        raise NotImplementedError

    def test_bfs_order(self):
        """BFS hands out requests in insertion order."""
        q = self.make_queue(BfsStrategy())
        for path in ("a", "b", "c"):
            q.add_url(f"https://example.com/{path}")
        got = [q.fetch_next().url for _ in range(3)]
        self.assertEqual(got, ["https://example.com/a", "https://example.com/b", "https://example.com/c"])
        self.assertIsNone(q.fetch_next())

    def test_dfs_order(self):
        """DFS hands out the most recent insertion first."""
        q = self.make_queue(DfsStrategy())
        for path in ("a", "b", "c"):
            q.add_url(f"https://example.com/{path}")
        got = [q.fetch_next().url for _ in range(3)]
        self.assertEqual(got, ["https://example.com/c", "https://example.com/b", "https://example.com/a"])

    def test_duplicate_keys_are_reported(self):
        q = self.make_queue(BfsStrategy())
        first = q.add_url("https://example.com/page?utm_source=x")
        second = q.add_url("https://EXAMPLE.com/page/")
        self.assertFalse(first.was_already_present)
        self.assertTrue(second.was_already_present)
        self.assertEqual(first.unique_key, second.unique_key)
        self.assertEqual(q.get_stats().pending, 1)

    def test_finished_keys_are_never_requeued(self):
        """Completed and failed keys stay deduplicated."""
        q = self.make_queue(BfsStrategy())
        q.add_url("https://example.com/ok")
        q.add_url("https://example.com/bad")
        ok = q.fetch_next()
        bad = q.fetch_next()
        q.mark_completed(ok.unique_key)
        q.mark_failed(bad.unique_key)
        self.assertTrue(q.add_url("https://example.com/ok").was_already_present)
        self.assertTrue(q.add_url("https://example.com/bad").was_already_present)
        self.assertTrue(q.was_already_processed(ok.unique_key))
        self.assertTrue(q.is_empty())

    def test_in_progress_keys_count_as_present(self):
        q = self.make_queue(BfsStrategy())
        q.add_url("https://example.com/x")
        req = q.fetch_next()
        self.assertTrue(q.add_url(req.url).was_already_present)

    def test_stats_track_each_state(self):
        q = self.make_queue(BfsStrategy())
        for i in range(4):
            q.add_url(f"https://example.com/{i}")
        a = q.fetch_next()
        b = q.fetch_next()
        q.fetch_next()
        q.mark_completed(a.unique_key)
        q.mark_failed(b.unique_key)
        stats = q.get_stats()
        self.assertEqual(stats.pending, 1)
        self.assertEqual(stats.in_progress, 1)
        self.assertEqual(stats.completed, 1)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(stats.total, 4)

    def test_request_fields_survive_the_queue(self):
        q = self.make_queue(BfsStrategy())
        q.add_request(
            CrawlRequest(
                url="https://example.com/child",
                unique_key="https://example.com/child",
                depth=2,
                parent_url="https://example.com",
                metadata={"k": "v"},
                label="detail",
            )
        )
        got = q.fetch_next()
        self.assertEqual(got.depth, 2)
        self.assertEqual(got.parent_url, "https://example.com")
        self.assertEqual(got.metadata, {"k": "v"})
        self.assertEqual(got.label, "detail")

    def test_add_requests_in_batches(self):
        q = self.make_queue(BfsStrategy())
        reqs = [_request(f"https://example.com/{i}") for i in range(30)] + [_request("https://example.com/0")]
        infos = q.add_requests(reqs, batch_size=7)
        self.assertEqual(len(infos), 31)
        self.assertTrue(infos[-1].was_already_present)
        self.assertEqual(q.get_stats().pending, 30)

    def test_concurrent_fetch_hands_each_item_out_once(self):
        q = self.make_queue(BfsStrategy())
        for i in range(50):
            q.add_url(f"https://example.com/{i}")
        seen = []
        lock = threading.Lock()

        def worker():
            while True:
                req = q.fetch_next()
                if req is None:
                    return
                with lock:
                    seen.append(req.unique_key)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(seen), 50)
        self.assertEqual(len(set(seen)), 50)


class TestInMemoryQueue(BackendContract, unittest.TestCase):

    def make_queue(self, strategy):
        q = PersistentRequestQueue("test", strategy)
        self.assertEqual(q.backend_name, "memory")
        return q


class TestRedisQueue(BackendContract, unittest.TestCase):

    def setUp(self):
        self.client = FakeRedis()

    def make_queue(self, strategy):
        q = PersistentRequestQueue("test", strategy, redis_client=self.client)
        self.assertEqual(q.backend_name, "redis")
        return q

    def test_keys_are_namespaced_by_queue_id(self):
        backend = RedisQueue(self.client, "job-1", BfsStrategy())
        self.assertEqual(backend.keys["pending"], "crawler:queue:job-1:pending")
        self.assertEqual(backend.keys["data"], "crawler:queue:job-1:data")

    def test_recover_in_progress_requeues_unfinished(self):
        """Items in flight when a process died are handed out again."""
        first = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        first.add_url("https://example.com/a")
        first.add_url("https://example.com/b")
        claimed = first.fetch_next()
        done = first.fetch_next()
        first.mark_completed(done.unique_key)

        second = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        stats = second.get_stats()
        self.assertEqual(stats.pending, 1)
        self.assertEqual(stats.in_progress, 0)
        self.assertEqual(second.fetch_next().unique_key, claimed.unique_key)

    def test_request_claimed_when_connection_drops_is_recovered(self):
        """The pop and the in-progress mark land together; a restart hands the request out again."""
        first = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        first.add_url("https://example.com/a")
        self.client.drop_connection = "after"
        with self.assertRaises(redis.exceptions.ConnectionError):
            first.fetch_next()

        second = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        self.assertEqual(second.get_stats().pending, 1)
        self.assertEqual(second.fetch_next().url, "https://example.com/a")

    def test_failed_fetch_leaves_request_pending(self):
        q = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        q.add_url("https://example.com/a")
        self.client.drop_connection = "before"
        with self.assertRaises(redis.exceptions.ConnectionError):
            q.fetch_next()
        self.assertEqual(q.get_stats().pending, 1)
        self.assertEqual(q.fetch_next().url, "https://example.com/a")

    def test_failed_add_is_not_recorded_as_seen(self):
        q = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client)
        self.client.drop_connection = "before"
        with self.assertRaises(redis.exceptions.ConnectionError):
            q.add_url("https://example.com/a")
        key = normalize_unique_key("https://example.com/a")
        self.assertFalse(q.was_already_processed(key))
        self.assertFalse(q.add_url("https://example.com/a").was_already_present)
        self.assertEqual(q.fetch_next().unique_key, key)

    def test_ordering_survives_restart(self):
        """The insertion counter lives in Redis, so BFS order holds across instances."""
        first = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client, recover=False)
        first.add_url("https://example.com/1")
        second = PersistentRequestQueue("job", BfsStrategy(), redis_client=self.client, recover=False)
        second.add_url("https://example.com/2")
        self.assertEqual(second.fetch_next().url, "https://example.com/1")


class TestBackendSelection(unittest.TestCase):

    def test_unreachable_redis_falls_back_to_memory(self):
        q = PersistentRequestQueue("test", BfsStrategy(), redis_client=FakeRedis(fail_ping=True))
        self.assertEqual(q.backend_name, "memory")
        q.add_url("https://example.com")
        self.assertIsNotNone(q.fetch_next())

    def test_no_redis_configured_uses_memory(self):
        q = PersistentRequestQueue("test", BfsStrategy())
        self.assertEqual(q.backend_name, "memory")

    def test_in_memory_backend_directly(self):
        backend = InMemoryQueue(BfsStrategy())
        backend.add_request(_request("https://example.com"))
        backend.add_request(_request("https://example.com"))
        self.assertEqual(backend.get_stats().pending, 1)


if __name__ == "__main__":
    unittest.main()
