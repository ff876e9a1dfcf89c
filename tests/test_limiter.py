"""Tests for the JobResourceLimiter class."""

import unittest

from crawlkit.errors import ValidationError
from crawlkit.limiter import JobResourceLimiter
from crawlkit.models import JobStats, ResourceLimits


class TestJobResourceLimiter(unittest.TestCase):
    """Limits are checked pages, then duration, then bytes."""

    def test_no_limits_never_stops(self):
        decision = JobResourceLimiter().should_stop(JobStats(10**6, 10**9, 10**12))
        self.assertFalse(decision.stop)
        self.assertEqual(decision.reason, "continue")

    def test_page_limit(self):
        limiter = JobResourceLimiter(ResourceLimits(max_pages=10))
        self.assertFalse(limiter.should_stop(JobStats(pages_crawled=9)).stop)
        decision = limiter.should_stop(JobStats(pages_crawled=10))
        self.assertTrue(decision.stop)
        self.assertEqual(decision.reason, "Page limit reached (10/10)")

    def test_duration_limit(self):
        limiter = JobResourceLimiter(ResourceLimits(max_duration_secs=2))
        self.assertFalse(limiter.should_stop(JobStats(elapsed_ms=1999)).stop)
        decision = limiter.should_stop(JobStats(elapsed_ms=2500))
        self.assertEqual(decision.reason, "Duration limit reached (2.5s/2s)")

    def test_byte_limit(self):
        limiter = JobResourceLimiter(ResourceLimits(max_bytes=1000))
        decision = limiter.should_stop(JobStats(bytes_downloaded=1500))
        self.assertEqual(decision.reason, "Byte limit reached (1500/1000 bytes)")

    def test_first_limit_in_order_wins(self):
        limiter = JobResourceLimiter(ResourceLimits(max_pages=1, max_duration_secs=1, max_bytes=1))
        decision = limiter.should_stop(JobStats(pages_crawled=5, elapsed_ms=5000, bytes_downloaded=5))
        self.assertTrue(decision.reason.startswith("Page limit"))

    def test_zero_limit_stops_immediately(self):
        limiter = JobResourceLimiter(ResourceLimits(max_pages=0))
        self.assertTrue(limiter.should_stop(JobStats()).stop)

    def test_set_limits_updates_only_given_fields(self):
        limiter = JobResourceLimiter(ResourceLimits(max_pages=5))
        limits = limiter.set_limits(max_bytes=100)
        self.assertEqual(limits, ResourceLimits(max_pages=5, max_bytes=100))
        self.assertEqual(limiter.limits.max_bytes, 100)

    def test_set_limits_rejects_unknown_keys(self):
        with self.assertRaises(ValidationError):
            JobResourceLimiter().set_limits(max_cpu=1)


if __name__ == "__main__":
    unittest.main()
