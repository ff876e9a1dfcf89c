from __future__ import annotations

from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from .discovery import RobotsTxtCache, UrlPatternFilter, apply_scope
from .errors import InvalidUrlError
from .models import CrawlRequest
from .normalizer import normalize_unique_key


def extract_links(html: str, base_url: str) -> List[str]:
    """Absolute http(s) links from <a href> and <link href>, in document order."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    for tag in soup.find_all(["a", "link"], href=True):
        href = tag["href"].strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
            continue
        resolved = urljoin(base_url, href)
        if urlsplit(resolved).scheme in ("http", "https"):
            links.append(resolved)
    return links


def filter_discovered_links(
    links: Iterable[str],
    parent: CrawlRequest,
    max_depth: int,
    same_domain_only: bool = True,
    url_filter: Optional[UrlPatternFilter] = None,
    robots: Optional[RobotsTxtCache] = None,
) -> List[str]:
    """Links worth enqueueing as children of ``parent``.

    Nothing is returned once the parent sits at the depth budget. Include and
    exclude patterns and robots.txt rules run after the host and duplicate
    checks.
    """
    if parent.depth >= max_depth:
        return []

    parent_host = urlsplit(parent.url).hostname
    seen = set()
    accepted: List[str] = []
    for link in links:
        parts = urlsplit(link)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            continue
        if same_domain_only and parts.hostname.lower() != (parent_host or "").lower():
            continue
        try:
            key = normalize_unique_key(link)
        except InvalidUrlError:
            continue
        if key in seen:
            continue
        seen.add(key)
        accepted.append(link)
    return apply_scope(accepted, url_filter, robots)
