"""Tests for data model classes."""

import unittest

from crawlkit.models import CrawlJob, CrawlRequest, DatasetDiff, MetricsSnapshot, QueueStats


class TestCrawlRequest(unittest.TestCase):
    """Verify CrawlRequest creation, immutability and serialization."""

    def test_defaults(self):
        request = CrawlRequest(url="https://example.com", unique_key="https://example.com")
        self.assertEqual(request.depth, 0)
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.metadata, {})
        self.assertIsNone(request.parent_url)

    def test_request_is_immutable(self):
        """Frozen dataclass should raise on attribute assignment."""
        request = CrawlRequest(url="https://example.com", unique_key="https://example.com")
        with self.assertRaises(AttributeError):
            request.depth = 3

    def test_dict_round_trip_keeps_every_field(self):
        request = CrawlRequest(
            url="https://example.com/a",
            unique_key="https://example.com/a",
            depth=2,
            parent_url="https://example.com",
            metadata={"x": 1},
            headers={"X-A": "b"},
            max_retries=5,
            retry_count=1,
            label="list",
        )
        self.assertEqual(CrawlRequest.from_dict(request.to_dict()), request)

    def test_from_dict_fills_defaults(self):
        request = CrawlRequest.from_dict({"url": "https://a.com", "unique_key": "https://a.com"})
        self.assertEqual(request.max_retries, 3)
        self.assertEqual(request.headers, {})


class TestAggregates(unittest.TestCase):

    def test_queue_stats_total(self):
        self.assertEqual(QueueStats(pending=1, completed=2, failed=3, in_progress=4).total, 10)

    def test_rate_429(self):
        snap = MetricsSnapshot(
            window_secs=30,
            total_requests=20,
            success_count=15,
            timeout_count=0,
            conn_error_count=0,
            http_429_count=5,
            http_403_count=0,
            blocked_count=5,
            avg_latency_ms=100.0,
            bytes_downloaded=0,
            timestamp=0.0,
        )
        self.assertEqual(snap.rate_429, 0.25)

    def test_diff_has_changes(self):
        self.assertFalse(DatasetDiff(added=[], removed=[], changed=[]).has_changes)
        self.assertTrue(DatasetDiff(added=["https://a.com"], removed=[], changed=[]).has_changes)

    def test_job_terminal_statuses(self):
        job = CrawlJob(id="1", url="https://a.com", type="url")
        self.assertFalse(job.is_terminal)
        for status in ("completed", "failed", "cancelled", "stopped"):
            job.status = status
            self.assertTrue(job.is_terminal)


if __name__ == "__main__":
    unittest.main()
