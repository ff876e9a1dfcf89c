"""Per-platform scrapers, each a primary strategy with an automatic fallback."""
from __future__ import annotations

from typing import Callable, Dict, Optional

from ..errors import ValidationError
from ..http_client import HttpClient
from .chain import PlatformScrapeResult, ScrapeOptions
from .instagram import scrape_instagram
from .tiktok import scrape_tiktok
from .twitter import scrape_twitter

SCRAPERS: Dict[str, Callable[..., PlatformScrapeResult]] = {
    "twitter": scrape_twitter,
    "x": scrape_twitter,
    "instagram": scrape_instagram,
    "tiktok": scrape_tiktok,
}


def scrape_platform(
    platform: str,
    url: str,
    options: Optional[ScrapeOptions] = None,
    client: Optional[HttpClient] = None,
) -> PlatformScrapeResult:
    scraper = SCRAPERS.get(platform.lower())
    if scraper is None:
        raise ValidationError(f"Unknown platform: {platform!r} (expected one of {sorted(SCRAPERS)})")
    return scraper(url, options, client)


__all__ = [
    "PlatformScrapeResult",
    "ScrapeOptions",
    "SCRAPERS",
    "scrape_instagram",
    "scrape_platform",
    "scrape_tiktok",
    "scrape_twitter",
]
