from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from ..errors import FetchError, PlatformUrlError, StrategyChainError
from ..http_client import HttpClient, HttpResponse
from ..stealth_headers import get_stealth_headers

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048


@dataclass(frozen=True)
class ScrapeOptions:
    max_items: int = 20
    proxy: Optional[str] = None
    timeout: float = 30.0
    request_delay_secs: float = 0.0


@dataclass(frozen=True)
class PlatformScrapeResult:
    platform: str
    profile_url: str
    profile: Optional[Dict[str, Any]]
    items: List[Dict[str, Any]]
    source: str
    errors: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return self.profile is None and not self.items

    @property
    def total_scraped(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_scraped"] = self.total_scraped
        return data


def matches_domain(url: str, domains: Sequence[str]) -> bool:
    if len(url) > MAX_URL_LENGTH:
        return False
    host = (urlsplit(url).hostname or "").lower()
    return any(host == d or host.endswith("." + d) for d in domains)


def validate_platform_url(platform: str, url: str, domains: Sequence[str]) -> None:
    if not matches_domain(url, domains):
        raise PlatformUrlError(platform, url, domains)


class ScrapeStrategy(ABC):
    """One way of getting a profile and its items out of a platform."""

    name = ""

    def __init__(self, client: Optional[HttpClient] = None) -> None:
        self._client = client

    def client(self, options: ScrapeOptions) -> HttpClient:
        return self._client or HttpClient(timeout=options.timeout)

    @abstractmethod
    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        ...

    def get(self, url: str, options: ScrapeOptions, headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> HttpResponse:
        resp = self.client(options).get(url, headers=headers, proxy=options.proxy, timeout=options.timeout, **kwargs)
        return _check_status(resp, url)

    def post(self, url: str, options: ScrapeOptions, headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> HttpResponse:
        resp = self.client(options).post(url, headers=headers, proxy=options.proxy, timeout=options.timeout, **kwargs)
        return _check_status(resp, url)

    def get_json(self, url: str, options: ScrapeOptions, headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> Any:
        resp = self.get(url, options, headers=headers, **kwargs)
        try:
            return json.loads(resp.body)
        except json.JSONDecodeError as exc:
            raise FetchError(url, f"invalid JSON response: {exc}", resp.status_code) from exc

    @staticmethod
    def page_headers(host: str) -> Dict[str, str]:
        headers = get_stealth_headers(host)
        # let the client negotiate encodings it can decode
        headers.pop("Accept-Encoding", None)
        return headers

    @staticmethod
    def pause(options: ScrapeOptions) -> None:
        if options.request_delay_secs > 0:
            time.sleep(options.request_delay_secs)


def _check_status(resp: HttpResponse, url: str) -> HttpResponse:
    if not 200 <= resp.status_code < 300:
        raise FetchError(url, f"HTTP {resp.status_code}", resp.status_code)
    return resp


def run_strategy_chain(
    platform: str,
    url: str,
    primary: ScrapeStrategy,
    fallback: ScrapeStrategy,
    options: ScrapeOptions,
) -> PlatformScrapeResult:
    """Primary first; on an exception or an empty result, the fallback.

    Both failing raises StrategyChainError. A fallback that returns an empty
    result without raising is returned as is.
    """
    try:
        result = primary.scrape(url, options)
    except Exception as exc:  # noqa: BLE001
        primary_error = f"{primary.name}: {exc}"
    else:
        if not result.is_empty:
            return result
        primary_error = f"{primary.name}: empty result"
    logger.warning("%s %s failed (%s); falling back to %s", platform, primary.name, primary_error, fallback.name)

    try:
        result = fallback.scrape(url, options)
    except Exception as exc:  # noqa: BLE001
        raise StrategyChainError(platform, primary_error, f"{fallback.name}: {exc}") from exc
    return replace(result, errors=[primary_error, *result.errors])
