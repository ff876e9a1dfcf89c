from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .discovery import compile_pattern
from .errors import ValidationError
from .models import ResourceLimits

ENGINES = ("http", "browser")
QUEUE_STRATEGIES = ("bfs", "dfs")
_TUPLE_FIELDS = ("proxy_urls", "include_patterns", "exclude_patterns")


@dataclass(frozen=True)
class CrawlerConfig:
    """All knobs of a crawl run. Build with ``from_env`` or ``merge_config``."""

    engine: str = "http"
    queue_strategy: str = "bfs"
    max_depth: int = 2
    same_domain_only: bool = True
    include_patterns: Tuple[str, ...] = ()
    exclude_patterns: Tuple[str, ...] = ()
    respect_robots_txt: bool = False
    robots_user_agent: str = "*"

    max_pages: Optional[int] = None
    max_duration_secs: Optional[float] = None
    max_bytes: Optional[int] = None

    min_concurrency: int = 1
    max_concurrency: int = 10
    scale_interval_secs: float = 0.5
    max_lag_ms: float = 50.0
    max_memory_ratio: float = 0.7
    threshold_429: float = 0.05

    request_timeout_secs: float = 30.0
    max_retries: int = 3
    backoff_base_secs: float = 0.5
    backoff_max_secs: float = 10.0

    max_requests_per_minute: int = 60
    delay_jitter_secs: float = 0.0

    redis_url: Optional[str] = None
    proxy_urls: Tuple[str, ...] = ()

    max_sessions: int = 100
    max_session_errors: int = 3
    max_session_usage: int = 50

    @property
    def limits(self) -> ResourceLimits:
        return ResourceLimits(
            max_pages=self.max_pages,
            max_duration_secs=self.max_duration_secs,
            max_bytes=self.max_bytes,
        )

    def validate(self) -> "CrawlerConfig":
        if self.engine not in ENGINES:
            raise ValidationError(f"engine must be one of {ENGINES}, got {self.engine!r}")
        if self.queue_strategy not in QUEUE_STRATEGIES:
            raise ValidationError(f"queue_strategy must be one of {QUEUE_STRATEGIES}, got {self.queue_strategy!r}")
        if self.max_depth < 0:
            raise ValidationError("max_depth must be >= 0")
        if self.min_concurrency < 1:
            raise ValidationError("min_concurrency must be >= 1")
        if self.max_concurrency < self.min_concurrency:
            raise ValidationError("max_concurrency must be >= min_concurrency")
        if self.request_timeout_secs <= 0:
            raise ValidationError("request_timeout_secs must be > 0")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        if not 0 < self.max_memory_ratio <= 1:
            raise ValidationError("max_memory_ratio must be in (0, 1]")
        for name in ("max_pages", "max_duration_secs", "max_bytes"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0")
        for pattern in self.include_patterns + self.exclude_patterns:
            try:
                compile_pattern(pattern)
            except re.error as exc:
                raise ValidationError(f"bad URL pattern {pattern!r}: {exc}") from exc
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlerConfig":
        """Read CRAWLER_* variables plus REDIS_URL and PROXY_URLS; unset keys keep defaults."""
        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"CRAWLER_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            overrides[f.name] = _coerce(f.name, raw)
        if env.get("REDIS_URL"):
            overrides["redis_url"] = env["REDIS_URL"]
        if env.get("PROXY_URLS"):
            overrides["proxy_urls"] = _split_list(env["PROXY_URLS"])
        return merge_config(cls(), **overrides)


def merge_config(base: CrawlerConfig, **overrides: Any) -> CrawlerConfig:
    """Return ``base`` with ``overrides`` applied; ``None`` values are ignored."""
    known = {f.name for f in fields(CrawlerConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValidationError(f"unknown config keys: {sorted(unknown)}")
    clean = {k: v for k, v in overrides.items() if v is not None}
    for name in _TUPLE_FIELDS:
        if name in clean:
            clean[name] = tuple(clean[name])
    return replace(base, **clean).validate()


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.replace("\n", ",").split(",") if p.strip())


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


_FIELD_TYPES: Dict[str, Callable[[str], Any]] = {
    "engine": str,
    "queue_strategy": str,
    "max_depth": int,
    "same_domain_only": _parse_bool,
    "include_patterns": _split_list,
    "exclude_patterns": _split_list,
    "respect_robots_txt": _parse_bool,
    "robots_user_agent": str,
    "max_pages": int,
    "max_duration_secs": float,
    "max_bytes": int,
    "min_concurrency": int,
    "max_concurrency": int,
    "scale_interval_secs": float,
    "max_lag_ms": float,
    "max_memory_ratio": float,
    "threshold_429": float,
    "request_timeout_secs": float,
    "max_retries": int,
    "backoff_base_secs": float,
    "backoff_max_secs": float,
    "max_requests_per_minute": int,
    "delay_jitter_secs": float,
    "redis_url": str,
    "proxy_urls": _split_list,
    "max_sessions": int,
    "max_session_errors": int,
    "max_session_usage": int,
}


def _coerce(name: str, raw: str) -> Any:
    try:
        return _FIELD_TYPES[name](raw)
    except ValueError as exc:
        raise ValidationError(f"CRAWLER_{name.upper()}: cannot parse {raw!r}") from exc
