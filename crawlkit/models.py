from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


JOB_TYPES = ("url", "seo")
JOB_STATUSES = ("pending", "running", "paused", "completed", "failed", "cancelled", "stopped")
TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled", "stopped")

SESSION_HEALTH = ("good", "degraded", "retired")


@dataclass(frozen=True)
class CrawlRequest:
    url: str
    unique_key: str
    depth: int = 0
    parent_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    max_retries: int = 3
    retry_count: int = 0
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlRequest":
        return cls(
            url=data["url"],
            unique_key=data["unique_key"],
            depth=int(data.get("depth", 0)),
            parent_url=data.get("parent_url"),
            metadata=dict(data.get("metadata") or {}),
            method=data.get("method", "GET"),
            headers=dict(data.get("headers") or {}),
            max_retries=int(data.get("max_retries", 3)),
            retry_count=int(data.get("retry_count", 0)),
            label=data.get("label"),
        )


@dataclass(frozen=True)
class CrawlResult:
    url: str
    status_code: int
    body: str
    headers: Dict[str, str]
    content_type: str
    request: CrawlRequest
    scraped_content: Optional[Dict[str, Any]] = None
    links: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    latency_ms: int = 0

    @property
    def size_bytes(self) -> int:
        return len(self.body.encode("utf-8"))


@dataclass(frozen=True)
class QueueItem:
    score: float
    request: CrawlRequest


@dataclass(frozen=True)
class QueueStats:
    pending: int
    completed: int
    failed: int
    in_progress: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.failed


@dataclass(frozen=True)
class QueueOperationInfo:
    was_already_present: bool
    unique_key: str


@dataclass(frozen=True)
class Fingerprint:
    id: str
    user_agent: str
    headers: Dict[str, str]
    browser: str
    platform: str
    impersonate: str
    chromium_version: Optional[int] = None
    screen: Tuple[int, int] = (1920, 1080)
    locale: str = "en-US"


@dataclass
class Session:
    """A host-scoped identity. Health only ever moves forward."""

    id: str
    host: str
    fingerprint: Fingerprint
    proxy: Optional[str] = None
    health: str = "good"
    error_score: int = 0
    usage_count: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def fingerprint_id(self) -> str:
        return self.fingerprint.id

    @property
    def is_usable(self) -> bool:
        return self.health != "retired"


@dataclass
class CrawlJob:
    id: str
    url: str
    type: str
    status: str = "pending"
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    user_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    stop_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(frozen=True)
class DatasetItem:
    url: str
    content_hash: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "contentHash": self.content_hash, "payload": self.payload}


@dataclass
class Dataset:
    id: str
    name: str
    items: List[DatasetItem] = field(default_factory=list)
    item_count: int = 0
    total_bytes: int = 0
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ChangedItem:
    url: str
    old_hash: str
    new_hash: str


@dataclass(frozen=True)
class DatasetDiff:
    added: List[str]
    removed: List[str]
    changed: List[ChangedItem]

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)


@dataclass(frozen=True)
class ResourceLimits:
    max_pages: Optional[int] = None
    max_duration_secs: Optional[float] = None
    max_bytes: Optional[int] = None


@dataclass(frozen=True)
class JobStats:
    pages_crawled: int = 0
    elapsed_ms: int = 0
    bytes_downloaded: int = 0


@dataclass(frozen=True)
class StopDecision:
    stop: bool
    reason: str


@dataclass(frozen=True)
class ResourceSnapshot:
    created_at: float
    lag_ms: float
    lag_overloaded: bool
    used_bytes: int
    total_bytes: int
    memory_ratio: float
    memory_overloaded: bool


@dataclass(frozen=True)
class RequestOutcome:
    url: str
    host: str
    success: bool
    status_code: Optional[int]
    latency_ms: int
    error_type: Optional[str] = None
    bytes_downloaded: int = 0


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_requests: int
    success_count: int
    timeout_count: int
    conn_error_count: int
    http_429_count: int
    http_403_count: int
    blocked_count: int
    avg_latency_ms: float
    bytes_downloaded: int
    timestamp: float

    @property
    def rate_429(self) -> float:
        return self.http_429_count / self.total_requests if self.total_requests else 0.0


@dataclass(frozen=True)
class CrawlEvent:
    type: str
    url: Optional[str] = None
    request: Optional[CrawlRequest] = None
    result: Optional[CrawlResult] = None
    error: Optional[str] = None
    run_result: Optional["CrawlRunResult"] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CrawlRunResult:
    stats: QueueStats
    duration_ms: int
    pages_crawled: int
    bytes_downloaded: int
    errors: List[Dict[str, str]] = field(default_factory=list)
    error_groups: Dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None

    @property
    def stopped_by_limiter(self) -> bool:
        return self.stop_reason is not None
