from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import CrawlerConfig, merge_config
from .engine import Crawler
from .errors import UnsupportedJobTypeError, ValidationError
from .handlers import create_request_handler
from .models import JOB_TYPES, CrawlEvent, CrawlJob, CrawlRunResult
from .normalizer import normalize_url
from .seo import analyze_seo

logger = logging.getLogger(__name__)

CrawlerFactory = Callable[[CrawlJob, CrawlerConfig], Crawler]


def default_crawler_factory(job: CrawlJob, config: CrawlerConfig) -> Crawler:
    return Crawler(create_request_handler(config), config, dataset_name=f"job-{job.id}")


class JobManager:
    """Accepts crawl jobs and runs them on a bounded pool, highest priority first.

    Equal priorities run in submission order. Each attempt of a job builds a
    fresh Crawler through ``crawler_factory``; a run that crawls no page is
    retried until ``max_retries`` is used up.
    """

    def __init__(
        self,
        config: Optional[CrawlerConfig] = None,
        crawler_factory: CrawlerFactory = default_crawler_factory,
        max_workers: int = 2,
    ) -> None:
        self._config = config or CrawlerConfig()
        self._factory = crawler_factory
        self._max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="crawl-job")
        self._cond = threading.Condition()
        self._jobs: Dict[str, CrawlJob] = {}
        self._order: Dict[str, int] = {}
        self._heap: List[Tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._crawlers: Dict[str, Crawler] = {}
        # jobs whose current attempt has been dispatched but not yet settled
        self._executing: Set[str] = set()
        self._active = 0
        self._shutdown = False
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="job-dispatcher", daemon=True)
        self._dispatcher.start()

    def create_job(
        self,
        url: str,
        type: str = "url",
        priority: int = 0,
        user_id: Optional[str] = None,
        max_retries: int = 3,
    ) -> CrawlJob:
        """Validate and enqueue a job. Invalid input raises before anything is queued."""
        if type not in JOB_TYPES:
            raise UnsupportedJobTypeError(f"Unsupported job type: {type!r} (expected one of {JOB_TYPES})")
        normalize_url(url)
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        job = CrawlJob(
            id=str(uuid.uuid4()),
            url=url,
            type=type,
            priority=int(priority),
            max_retries=max_retries,
            user_id=user_id,
        )
        with self._cond:
            if self._shutdown:
                raise RuntimeError("JobManager is shut down")
            self._jobs[job.id] = job
            self._order[job.id] = next(self._seq)
            self._push_locked(job)
            self._cond.notify_all()
        logger.info("Job %s created (%s %s, priority %d)", job.id, job.type, job.url, job.priority)
        return job

    def get_jobs(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> List[CrawlJob]:
        """Most recently created first."""
        with self._cond:
            jobs = [j for j in self._jobs.values() if user_id is None or j.user_id == user_id]
            jobs.sort(key=lambda j: self._order[j.id], reverse=True)
        return jobs if limit is None else jobs[:limit]

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        with self._cond:
            return self._jobs.get(job_id)

    def cancel_job(self, job_id: str) -> bool:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = "cancelled"
            job.completed_at = time.time()
            crawler = self._crawlers.get(job_id)
            self._cond.notify_all()
        if crawler is not None:
            crawler.stop()
        logger.info("Job %s cancelled", job_id)
        return True

    def pause_job(self, job_id: str) -> bool:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status not in ("pending", "running"):
                return False
            job.status = "paused"
            crawler = self._crawlers.get(job_id)
        if crawler is not None:
            crawler.pause()
        return True

    def resume_job(self, job_id: str) -> bool:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status != "paused":
                return False
            crawler = self._crawlers.get(job_id)
            if crawler is not None or job.id in self._executing:
                job.status = "running"
            else:
                job.status = "pending"
                self._push_locked(job)
                self._cond.notify_all()
        if crawler is not None:
            crawler.resume()
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[CrawlJob]:
        """Block until the job reaches a terminal status; return it (or None if unknown)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            job = self._jobs.get(job_id)
            while job is not None and not job.is_terminal:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._cond.wait(remaining)
            return job

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._shutdown = True
            crawlers = list(self._crawlers.values())
            self._cond.notify_all()
        for crawler in crawlers:
            crawler.stop()
        self._dispatcher.join(timeout=5)
        self._executor.shutdown(wait=wait)

    def _push_locked(self, job: CrawlJob) -> None:
        heapq.heappush(self._heap, (-job.priority, self._order[job.id], job.id))

    def _next_locked(self) -> Optional[CrawlJob]:
        while self._heap:
            _, _, job_id = heapq.heappop(self._heap)
            job = self._jobs.get(job_id)
            if job is not None and job.status == "pending":
                return job
        return None

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while not self._shutdown and (self._active >= self._max_workers or not self._heap):
                    self._cond.wait()
                if self._shutdown:
                    return
                job = self._next_locked()
                if job is None:
                    continue
                job.status = "running"
                job.started_at = job.started_at or time.time()
                self._active += 1
                self._executing.add(job.id)
            self._executor.submit(self._execute, job)

    def _job_config(self, job: CrawlJob) -> CrawlerConfig:
        if job.type == "seo":
            return merge_config(self._config, max_depth=0)
        return self._config

    def _execute(self, job: CrawlJob) -> None:
        try:
            self._run_attempt(job)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s crashed", job.id)
            with self._cond:
                self._executing.discard(job.id)
                self._crawlers.pop(job.id, None)
                if not job.is_terminal:
                    job.status = "failed"
                    job.error = f"{type(exc).__name__}: {exc}"
                    job.completed_at = time.time()
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _run_attempt(self, job: CrawlJob) -> None:
        crawler = self._factory(job, self._job_config(job))
        events = crawler.subscribe() if job.type == "seo" else None
        with self._cond:
            if job.status == "cancelled":
                self._executing.discard(job.id)
                return
            self._crawlers[job.id] = crawler
            if job.status == "paused":
                crawler.pause()
        run = crawler.run([job.url])
        with self._cond:
            self._executing.discard(job.id)
            self._crawlers.pop(job.id, None)
            self._settle(job, run, events)

    def _settle(self, job: CrawlJob, run: CrawlRunResult, events: Optional["queue.Queue[CrawlEvent]"]) -> None:
        if job.status == "cancelled":
            return
        if run.stop_reason is not None:
            job.status = "stopped"
            job.stop_reason = run.stop_reason
            job.result = self._summary(run, job)
            job.completed_at = time.time()
            logger.info("Job %s stopped by limiter: %s", job.id, run.stop_reason)
            return
        if run.pages_crawled == 0:
            job.error = run.errors[0]["error"] if run.errors else "no page could be crawled"
            if job.retry_count < job.max_retries:
                job.retry_count += 1
                job.status = "pending"
                self._push_locked(job)
                logger.warning("Job %s attempt failed (%s); retry %d/%d", job.id, job.error, job.retry_count, job.max_retries)
            else:
                job.status = "failed"
                job.completed_at = time.time()
                logger.warning("Job %s failed after %d retries: %s", job.id, job.retry_count, job.error)
            return
        job.status = "completed"
        job.error = None
        job.result = self._summary(run, job)
        if job.type == "seo" and events is not None:
            job.result["seo"] = _seo_report(events)
        job.completed_at = time.time()

    @staticmethod
    def _summary(run: CrawlRunResult, job: CrawlJob) -> Dict:
        return {
            "pagesCrawled": run.pages_crawled,
            "bytesDownloaded": run.bytes_downloaded,
            "durationMs": run.duration_ms,
            "failed": run.stats.failed,
            "errorGroups": run.error_groups,
            "stopReason": run.stop_reason,
            "retryCount": job.retry_count,
        }


def _seo_report(events: "queue.Queue[CrawlEvent]") -> Optional[Dict]:
    while not events.empty():
        event: CrawlEvent = events.get_nowait()
        if event.type == "request_completed" and event.result is not None and event.request.depth == 0:
            return analyze_seo(event.result.body, event.result.url)
    return None
