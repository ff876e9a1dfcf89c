"""Crawl scope rules beyond depth and host: URL patterns, robots.txt and sitemaps."""
from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple
from urllib.parse import urljoin, urlsplit
from urllib.robotparser import RobotFileParser

from bs4 import BeautifulSoup

from .errors import FetchError
from .http_client import HttpClient

logger = logging.getLogger(__name__)

# url -> body, or None when the document is missing
Fetcher = Callable[[str], Optional[str]]

REGEX_PREFIX = "re:"
MAX_SITEMAPS = 10


def compile_pattern(pattern: str) -> Pattern[str]:
    """``re:<regex>`` is used as is; anything else is a glob where ``*`` and ``?`` are wildcards."""
    if pattern.startswith(REGEX_PREFIX):
        return re.compile(pattern[len(REGEX_PREFIX):], re.I)
    body = "".join(".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern)
    return re.compile(f"^{body}$", re.I)


class UrlPatternFilter:
    """Exclude patterns win; a non-empty include list then acts as a whitelist."""

    def __init__(self, include: Sequence[str] = (), exclude: Sequence[str] = ()) -> None:
        self._include = [compile_pattern(p) for p in include]
        self._exclude = [compile_pattern(p) for p in exclude]

    @property
    def is_empty(self) -> bool:
        return not self._include and not self._exclude

    def allows(self, url: str) -> bool:
        if any(p.search(url) for p in self._exclude):
            return False
        if self._include:
            return any(p.search(url) for p in self._include)
        return True


def http_fetcher(client: HttpClient, user_agent: str = "crawlkit", timeout: float = 10.0) -> Fetcher:
    def fetch(url: str) -> Optional[str]:
        try:
            resp = client.request("GET", url, headers={"User-Agent": user_agent}, timeout=timeout)
        except FetchError as exc:
            logger.debug("Fetch of %s failed: %s", url, exc)
            return None
        if resp.status_code != 200:
            logger.debug("Fetch of %s returned HTTP %d", url, resp.status_code)
            return None
        return resp.body

    return fetch


class RobotsTxtCache:
    """One parsed robots.txt per scheme+host, fetched on first use.

    A missing or unreachable robots.txt allows everything.
    """

    def __init__(self, fetch: Fetcher, user_agent: str = "*") -> None:
        self._fetch = fetch
        self.user_agent = user_agent
        self._cache: Dict[str, Tuple[RobotFileParser, List[str]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def robots_url(url: str) -> str:
        parts = urlsplit(url)
        return f"{parts.scheme}://{parts.netloc}/robots.txt"

    def _load(self, robots_url: str) -> Tuple[RobotFileParser, List[str]]:
        raw = self._fetch(robots_url) or ""
        parser = RobotFileParser(robots_url)
        parser.parse(raw.splitlines())
        logger.debug("Loaded %s (%d bytes)", robots_url, len(raw))
        return parser, list(parser.site_maps() or [])

    def _get(self, url: str) -> Tuple[RobotFileParser, List[str]]:
        robots_url = self.robots_url(url)
        with self._lock:
            if robots_url not in self._cache:
                self._cache[robots_url] = self._load(robots_url)
            return self._cache[robots_url]

    def is_allowed(self, url: str) -> bool:
        parser, _ = self._get(url)
        return parser.can_fetch(self.user_agent, url)

    def crawl_delay(self, url: str) -> Optional[float]:
        parser, _ = self._get(url)
        delay = parser.crawl_delay(self.user_agent)
        return None if delay is None else float(delay)

    def sitemaps(self, url: str) -> List[str]:
        _, maps = self._get(url)
        return list(maps)


def parse_sitemap(xml: str) -> Tuple[List[str], List[str]]:
    """Return ``(page_urls, child_sitemaps)`` from a urlset or a sitemap index."""
    if not xml:
        return [], []
    soup = BeautifulSoup(xml, "html.parser")
    locs = [loc.get_text(strip=True) for loc in soup.find_all("loc")]
    locs = [loc for loc in locs if loc]
    if soup.find("sitemapindex") is not None:
        return [], locs
    return locs, []


def fetch_sitemap_urls(
    site_url: str,
    fetch: Fetcher,
    robots: Optional[RobotsTxtCache] = None,
    max_sitemaps: int = MAX_SITEMAPS,
) -> List[str]:
    """Page URLs listed by the site's sitemaps, in discovery order.

    Starts from ``/sitemap.xml`` plus any Sitemap lines in robots.txt, follows
    sitemap indexes, and reads at most ``max_sitemaps`` documents. Gzipped
    sitemaps are skipped.
    """
    start: List[str] = [urljoin(site_url, "/sitemap.xml")]
    if robots is not None:
        start.extend(robots.sitemaps(site_url))

    pending = list(dict.fromkeys(start))
    visited = set()
    urls: List[str] = []
    seen_urls = set()
    while pending and len(visited) < max_sitemaps:
        sitemap_url = pending.pop(0)
        if sitemap_url in visited:
            continue
        visited.add(sitemap_url)
        if urlsplit(sitemap_url).path.endswith(".gz"):
            logger.info("Skipping compressed sitemap %s", sitemap_url)
            continue
        pages, children = parse_sitemap(fetch(sitemap_url) or "")
        for page in pages:
            if page not in seen_urls:
                seen_urls.add(page)
                urls.append(page)
        pending.extend(c for c in children if c not in visited)
    logger.info("Found %d URL(s) in %d sitemap(s) for %s", len(urls), len(visited), site_url)
    return urls


def apply_scope(
    links: Iterable[str],
    url_filter: Optional[UrlPatternFilter] = None,
    robots: Optional[RobotsTxtCache] = None,
) -> List[str]:
    """Links that pass the pattern filter and then robots.txt."""
    kept: List[str] = []
    for link in links:
        if url_filter is not None and not url_filter.allows(link):
            continue
        if robots is not None and not robots.is_allowed(link):
            logger.debug("Disallowed by robots.txt: %s", link)
            continue
        kept.append(link)
    return kept


def expand_with_sitemaps(
    seeds: Sequence[str],
    fetch: Fetcher,
    robots: Optional[RobotsTxtCache] = None,
    url_filter: Optional[UrlPatternFilter] = None,
    obey_robots: bool = False,
) -> List[str]:
    """Seeds followed by the in-scope sitemap URLs of each seed's site."""
    sites = list(dict.fromkeys(urljoin(seed, "/") for seed in seeds))
    found: List[str] = []
    for site in sites:
        found.extend(fetch_sitemap_urls(site, fetch, robots))
    found = apply_scope(found, url_filter, robots if obey_robots else None)
    return list(dict.fromkeys(list(seeds) + found))
