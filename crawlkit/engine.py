from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from typing import Callable, Dict, Iterable, List, Optional

from .autoscaled_pool import AutoscaledPool
from .backoff import BackoffStrategy
from .config import CrawlerConfig
from .dataset import DatasetManager, item_from_result
from .discovery import RobotsTxtCache, UrlPatternFilter, http_fetcher
from .errors import FetchError
from .handlers import RequestHandler
from .http_client import HttpClient
from .limiter import JobResourceLimiter
from .link_filter import filter_discovered_links
from .metrics import ErrorTracker, MetricsCollector
from .models import CrawlEvent, CrawlRequest, CrawlResult, CrawlRunResult, Dataset, JobStats, RequestOutcome
from .normalizer import hostname_of, normalize_unique_key
from .queue_strategy import create_queue_strategy
from .rate_limiter import DomainRateLimiter
from .request_queue import PersistentRequestQueue
from .resource_monitor import Snapshotter
from .storage import StorageBase
from .strategies import ScaleDownStrategy, ScaleUpStrategy

logger = logging.getLogger(__name__)

EVENT_TYPES = ("request_started", "request_completed", "request_failed", "crawl_finished")


class Crawler:
    """Drives one crawl: queue -> rate limiter -> handler -> links/dataset/storage.

    Workers run on an AutoscaledPool. Each worker takes one request from the
    queue, retries retryable failures with backoff, then settles the request
    as completed or failed. Every lifecycle step is published as a CrawlEvent
    to all subscribers, in the same order for each of them.
    """

    def __init__(
        self,
        handler: RequestHandler,
        config: Optional[CrawlerConfig] = None,
        request_queue: Optional[PersistentRequestQueue] = None,
        limiter: Optional[JobResourceLimiter] = None,
        metrics: Optional[MetricsCollector] = None,
        storage: Optional[StorageBase] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        backoff: Optional[BackoffStrategy] = None,
        dataset_manager: Optional[DatasetManager] = None,
        snapshotter: Optional[Snapshotter] = None,
        robots: Optional[RobotsTxtCache] = None,
        dataset_name: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handler = handler
        self._config = config or CrawlerConfig()
        cfg = self._config
        self._queue = request_queue or PersistentRequestQueue(
            queue_id=str(uuid.uuid4()),
            strategy=create_queue_strategy(cfg.queue_strategy),
            redis_url=cfg.redis_url,
        )
        self._limiter = limiter or JobResourceLimiter(cfg.limits)
        self._metrics = metrics or MetricsCollector()
        self._storage = storage
        self._rate_limiter = rate_limiter or DomainRateLimiter(
            max_per_minute=cfg.max_requests_per_minute,
            jitter_secs=cfg.delay_jitter_secs,
        )
        self._backoff = backoff or BackoffStrategy(
            base_seconds=cfg.backoff_base_secs,
            max_seconds=cfg.backoff_max_secs,
        )
        self._datasets = dataset_manager or DatasetManager()
        self._snapshotter = snapshotter or Snapshotter(
            max_lag_ms=cfg.max_lag_ms,
            max_memory_ratio=cfg.max_memory_ratio,
        )
        self._url_filter = UrlPatternFilter(cfg.include_patterns, cfg.exclude_patterns)
        if robots is None and cfg.respect_robots_txt:
            robots = RobotsTxtCache(
                http_fetcher(HttpClient(timeout=cfg.request_timeout_secs)),
                user_agent=cfg.robots_user_agent,
            )
        self._robots = robots
        self._dataset_name = dataset_name or "crawl"
        self._sleep = sleep
        self._clock = clock

        self._errors = ErrorTracker()
        self._lock = threading.Lock()
        self._events_lock = threading.Lock()
        self._subscribers: List["queue.Queue[CrawlEvent]"] = []
        self._pool: Optional[AutoscaledPool] = None
        self._dataset: Optional[Dataset] = None
        self._started_at: Optional[float] = None
        self._pages_crawled = 0
        self._bytes_downloaded = 0
        self._failures: List[Dict[str, str]] = []
        self._stop_reason: Optional[str] = None
        self._stopping = False

    def subscribe(self) -> "queue.Queue[CrawlEvent]":
        q: "queue.Queue[CrawlEvent]" = queue.Queue()
        with self._events_lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[CrawlEvent]") -> None:
        with self._events_lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def _emit(self, event: CrawlEvent) -> None:
        with self._events_lock:
            for q in self._subscribers:
                q.put(event)

    @property
    def request_queue(self) -> PersistentRequestQueue:
        return self._queue

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._dataset

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def job_stats(self) -> JobStats:
        elapsed = 0 if self._started_at is None else int((self._clock() - self._started_at) * 1000)
        with self._lock:
            return JobStats(
                pages_crawled=self._pages_crawled,
                elapsed_ms=elapsed,
                bytes_downloaded=self._bytes_downloaded,
            )

    def stop(self) -> None:
        """Stop dispatching; requests already in flight are allowed to finish."""
        self._stopping = True
        if self._pool is not None:
            self._pool.stop()

    def pause(self) -> None:
        if self._pool is not None:
            self._pool.pause()

    def resume(self) -> None:
        if self._pool is not None:
            self._pool.resume()

    def seed_request(self, url: str) -> CrawlRequest:
        return CrawlRequest(
            url=url,
            unique_key=normalize_unique_key(url),
            depth=0,
            max_retries=self._config.max_retries,
        )

    def run(self, seed_urls: Iterable[str]) -> CrawlRunResult:
        """Crawl from ``seed_urls`` until the queue drains, a limit hits, or stop() is called."""
        if self._pool is not None and self._pool.is_running:
            raise RuntimeError("Crawler is already running")
        seeds = [self.seed_request(url) for url in seed_urls]
        self._queue.add_requests(seeds)
        self._dataset = self._datasets.create(self._dataset_name)
        self._started_at = self._clock()
        cfg = self._config
        self._pool = AutoscaledPool(
            task_fn=self._process_next,
            is_task_ready_fn=self._is_task_ready,
            is_finished_fn=self._is_finished,
            backlog_fn=lambda: self._queue.get_stats().pending,
            min_concurrency=cfg.min_concurrency,
            max_concurrency=cfg.max_concurrency,
            snapshotter=self._snapshotter,
            metrics=self._metrics,
            strategies=[
                ScaleDownStrategy(cfg.min_concurrency, cfg.max_concurrency, threshold_429=cfg.threshold_429),
                ScaleUpStrategy(cfg.min_concurrency, cfg.max_concurrency),
            ],
            scale_interval_secs=cfg.scale_interval_secs,
        )
        logger.info("Crawl started with %d seed(s) on %s queue", len(seeds), self._queue.backend_name)
        self._pool.run()

        stats = self.job_stats()
        with self._lock:
            failures = list(self._failures)
        result = CrawlRunResult(
            stats=self._queue.get_stats(),
            duration_ms=stats.elapsed_ms,
            pages_crawled=stats.pages_crawled,
            bytes_downloaded=stats.bytes_downloaded,
            errors=failures,
            error_groups=self._errors.groups(),
            stop_reason=self._stop_reason,
        )
        logger.info(
            "Crawl finished: %d page(s), %d failure(s), %d bytes in %d ms%s",
            result.pages_crawled,
            len(failures),
            result.bytes_downloaded,
            result.duration_ms,
            f" (stopped: {self._stop_reason})" if self._stop_reason else "",
        )
        self._emit(CrawlEvent(type="crawl_finished", run_result=result))
        return result

    def _is_task_ready(self) -> bool:
        if self._stopping or self._check_limits():
            return False
        return not self._queue.is_empty()

    def _is_finished(self) -> bool:
        return self._stopping or self._queue.is_empty()

    def _check_limits(self) -> bool:
        decision = self._limiter.should_stop(self.job_stats())
        if not decision.stop:
            return False
        with self._lock:
            first = self._stop_reason is None
            if first:
                self._stop_reason = decision.reason
        if first:
            logger.info("Resource limit reached: %s", decision.reason)
            self.stop()
        return True

    def _process_next(self) -> None:
        request = self._queue.fetch_next()
        if request is None:
            return
        self._emit(CrawlEvent(type="request_started", url=request.url, request=request))
        try:
            result = self._fetch_with_retries(request)
        except FetchError as exc:
            self._errors.add(exc)
            with self._lock:
                self._failures.append({"url": request.url, "error": str(exc)})
            self._queue.mark_failed(request.unique_key)
            logger.warning("Request failed: %s", exc)
            self._emit(CrawlEvent(type="request_failed", url=request.url, request=request, error=str(exc)))
        except Exception:
            self._queue.mark_failed(request.unique_key)
            raise
        else:
            self._settle_success(request, result)
        self._check_limits()

    def _fetch_with_retries(self, request: CrawlRequest) -> CrawlResult:
        host = hostname_of(request.url)
        attempt = 0
        while True:
            self._rate_limiter.acquire(host)
            started = self._clock()
            try:
                result = self._handler.handle_request(request)
            except FetchError as exc:
                self._metrics.record(RequestOutcome(
                    url=request.url,
                    host=host,
                    success=False,
                    status_code=exc.status_code,
                    latency_ms=int((self._clock() - started) * 1000),
                    error_type=type(exc).__name__,
                ))
                if not exc.retryable or attempt >= request.max_retries or self._stopping:
                    raise
                attempt += 1
                delay = self._backoff.get_sleep(attempt, type(exc).__name__)
                logger.info("Retrying %s in %.2fs (attempt %d/%d): %s", request.url, delay, attempt, request.max_retries, exc)
                self._sleep(delay)
                continue
            self._metrics.record(RequestOutcome(
                url=request.url,
                host=host,
                success=True,
                status_code=result.status_code,
                latency_ms=result.latency_ms,
                bytes_downloaded=result.size_bytes,
            ))
            return result

    def _settle_success(self, request: CrawlRequest, result: CrawlResult) -> None:
        with self._lock:
            self._pages_crawled += 1
            self._bytes_downloaded += result.size_bytes
        self._queue.mark_completed(request.unique_key)

        children = filter_discovered_links(
            result.links,
            request,
            self._config.max_depth,
            self._config.same_domain_only,
            url_filter=None if self._url_filter.is_empty else self._url_filter,
            robots=self._robots,
        )
        if children and not self._stopping:
            self._queue.add_requests(
                CrawlRequest(
                    url=link,
                    unique_key=normalize_unique_key(link),
                    depth=request.depth + 1,
                    parent_url=request.url,
                    max_retries=request.max_retries,
                )
                for link in children
            )

        if self._dataset is not None:
            self._datasets.add_items(self._dataset.id, [item_from_result(result)])
        if self._storage is not None:
            self._storage.write(result)
        self._emit(CrawlEvent(type="request_completed", url=request.url, request=request, result=result))
