from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .config import CrawlerConfig
from .detectors import classify_response
from .errors import AntiBotError, FetchError, RequestTimeoutError, TransientFetchError, ValidationError
from .fingerprint import FingerprintGenerator
from .http_client import HttpClient, HttpResponse
from .link_filter import extract_links
from .models import CrawlRequest, CrawlResult, Fingerprint, Session
from .normalizer import hostname_of
from .proxy_rotator import ProxyRotator
from .session_pool import SessionPool

logger = logging.getLogger(__name__)

_BLOCK_STATUSES = (403, 429)


class RequestHandler(ABC):
    """Turns one CrawlRequest into a CrawlResult or raises a FetchError."""

    @abstractmethod
    def handle_request(self, request: CrawlRequest) -> CrawlResult:
        ...

    def close(self) -> None:
        pass


def _content_type(headers: Dict[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == "content-type":
            return value.split(";", 1)[0].strip().lower()
    return ""


def execute_with_session(
    pool: SessionPool,
    request: CrawlRequest,
    fetch: Callable[[Session], HttpResponse],
) -> CrawlResult:
    """Run one fetch under the host's session and settle the session's health.

    Success marks the session good. Any other failure marks it bad; a 403/429
    or a detected challenge page retires it outright (blocking its proxy) so
    the next attempt gets a fresh identity. Failures always surface as
    FetchError.
    """
    session = pool.get_session(hostname_of(request.url))
    start = time.monotonic()
    try:
        response = fetch(session)
    except FetchError:
        pool.mark_bad(session.id)
        raise
    except TimeoutError as exc:
        pool.mark_bad(session.id)
        raise RequestTimeoutError(request.url, f"request timed out: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        pool.mark_bad(session.id)
        raise FetchError(request.url, f"{type(exc).__name__}: {exc}") from exc
    latency_ms = int((time.monotonic() - start) * 1000)

    detection = classify_response(response.body, response.headers, response.status_code)
    if detection is not None or response.status_code in _BLOCK_STATUSES:
        kind = detection.kind if detection is not None else f"http_{response.status_code}"
        pool.retire(session.id, proxy_blocked=True)
        logger.warning("Blocked on %s (%s); session %s retired", request.url, kind, session.id)
        raise AntiBotError(request.url, kind, response.status_code)
    if response.status_code >= 500:
        pool.mark_bad(session.id)
        raise TransientFetchError(request.url, f"HTTP {response.status_code}", response.status_code)
    if response.status_code >= 400:
        pool.mark_bad(session.id)
        raise FetchError(request.url, f"HTTP {response.status_code}", response.status_code)

    pool.mark_good(session.id)
    content_type = _content_type(response.headers)
    links = extract_links(response.body, response.url or request.url) if "html" in content_type else []
    return CrawlResult(
        url=request.url,
        status_code=response.status_code,
        body=response.body,
        headers=dict(response.headers),
        content_type=content_type,
        request=request,
        links=links,
        session_id=session.id,
        latency_ms=latency_ms,
    )


def _default_pool(config: CrawlerConfig) -> SessionPool:
    return SessionPool(
        fingerprints=FingerprintGenerator(),
        proxies=ProxyRotator(config.proxy_urls),
        max_sessions=config.max_sessions,
        max_error_score=config.max_session_errors,
        max_usage_count=config.max_session_usage,
    )


class HttpRequestHandler(RequestHandler):
    """Plain HTTP fetches impersonating the session's browser at the TLS layer."""

    def __init__(
        self,
        session_pool: SessionPool,
        http_client: Optional[HttpClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._pool = session_pool
        self._client = http_client or HttpClient(timeout=timeout)
        self._timeout = timeout
        # Sessions retire on blocks, error score, usage limit and eviction alike.
        self._pool.add_retire_listener(self._discard)

    def handle_request(self, request: CrawlRequest) -> CrawlResult:
        def fetch(session: Session) -> HttpResponse:
            headers = dict(session.fingerprint.headers)
            headers.update(request.headers)
            return self._client.request(
                request.method,
                request.url,
                headers=headers,
                timeout=self._timeout,
                proxy=session.proxy,
                impersonate=session.fingerprint.impersonate,
                session_key=session.id,
            )

        return execute_with_session(self._pool, request, fetch)

    def _discard(self, session: Session) -> None:
        self._client.discard_session(session.id)

    def close(self) -> None:
        self._client.close()


@dataclass(frozen=True)
class BrowserPage:
    status_code: int
    html: str
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""


class BrowserCollaborator(ABC):
    """A headless browser driven elsewhere. Only rendering is delegated here."""

    @abstractmethod
    def render(self, url: str, timeout: float, fingerprint: Fingerprint, proxy: Optional[str] = None) -> BrowserPage:
        ...


class BrowserRequestHandler(RequestHandler):
    def __init__(self, session_pool: SessionPool, browser: BrowserCollaborator, timeout: float = 30.0) -> None:
        self._pool = session_pool
        self._browser = browser
        self._timeout = timeout

    def handle_request(self, request: CrawlRequest) -> CrawlResult:
        def fetch(session: Session) -> HttpResponse:
            page = self._browser.render(request.url, self._timeout, session.fingerprint, session.proxy)
            headers = dict(page.headers)
            if not _content_type(headers):
                headers["Content-Type"] = "text/html"
            return HttpResponse(status_code=page.status_code, body=page.html, headers=headers, url=page.url or request.url)

        return execute_with_session(self._pool, request, fetch)


def create_request_handler(
    config: CrawlerConfig,
    session_pool: Optional[SessionPool] = None,
    http_client: Optional[HttpClient] = None,
    browser: Optional[BrowserCollaborator] = None,
) -> RequestHandler:
    """Build the handler for ``config.engine`` with a session pool sized from config."""
    pool = session_pool or _default_pool(config)
    if config.engine == "http":
        return HttpRequestHandler(pool, http_client=http_client, timeout=config.request_timeout_secs)
    if config.engine == "browser":
        if browser is None:
            raise ValidationError("browser engine requires a BrowserCollaborator")
        return BrowserRequestHandler(pool, browser, timeout=config.request_timeout_secs)
    raise ValidationError(f"Unknown engine: {config.engine}")
