from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from ..errors import FetchError, InvalidUrlError
from ..http_client import HttpClient
from .chain import PlatformScrapeResult, ScrapeOptions, ScrapeStrategy, run_strategy_chain, validate_platform_url

PLATFORM = "tiktok"
DOMAINS = ("tiktok.com",)

OEMBED_URL = "https://www.tiktok.com/oembed"

_USERNAME = re.compile(r"^/@([A-Za-z0-9_.]+)")
_VIDEO_ID = re.compile(r"/(?:video|v)/(\d+)")


def extract_username(url: str) -> Optional[str]:
    match = _USERNAME.match(urlsplit(url).path)
    return match.group(1) if match else None


def extract_video_id(url: str) -> Optional[str]:
    match = _VIDEO_ID.search(urlsplit(url).path)
    return match.group(1) if match else None


def profile_url(username: str) -> str:
    return f"https://www.tiktok.com/@{username.lstrip('@')}"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class TikTokRehydrationStrategy(ScrapeStrategy):
    """Profile page HTML; data comes from the __UNIVERSAL_DATA_FOR_REHYDRATION__ script."""

    name = "web"

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        username = extract_username(url)
        if username is None:
            raise InvalidUrlError(url, "no TikTok username in URL")
        page_url = profile_url(username)
        resp = self.get(page_url, options, headers=self.page_headers("www.tiktok.com"))

        script = BeautifulSoup(resp.body, "html.parser").find("script", id="__UNIVERSAL_DATA_FOR_REHYDRATION__")
        if script is None or not script.string:
            raise FetchError(page_url, "rehydration data not found in page")
        try:
            data = json.loads(script.string)
        except json.JSONDecodeError as exc:
            raise FetchError(page_url, f"invalid rehydration JSON: {exc}") from exc
        detail = (data.get("__DEFAULT_SCOPE__") or {}).get("webapp.user-detail")
        if not detail:
            raise FetchError(page_url, "no user detail in rehydration data")

        profile = None
        user = (detail.get("userInfo") or {}).get("user")
        stats = (detail.get("userInfo") or {}).get("stats") or {}
        if user:
            profile = {
                "username": user.get("uniqueId") or username,
                "nickname": user.get("nickname") or "",
                "bio": user.get("signature") or "",
                "followerCount": _int(stats.get("followerCount", user.get("followerCount"))),
                "followingCount": _int(stats.get("followingCount", user.get("followingCount"))),
                "likeCount": _int(stats.get("heartCount", user.get("heartCount"))),
                "isVerified": user.get("verified") is True,
                "avatarUrl": user.get("avatarLarger") or user.get("avatarMedium") or "",
            }

        videos: List[Dict[str, Any]] = []
        errors: List[str] = []
        for item in (detail.get("itemList") or [])[: options.max_items]:
            try:
                item_stats = item.get("stats") or {}
                videos.append({
                    "id": item["id"],
                    "description": item.get("desc") or "",
                    "likeCount": _int(item_stats.get("diggCount")),
                    "commentCount": _int(item_stats.get("commentCount")),
                    "shareCount": _int(item_stats.get("shareCount")),
                    "viewCount": _int(item_stats.get("playCount")),
                    "timestamp": item.get("createTime"),
                    "videoUrl": (item.get("video") or {}).get("downloadAddr") or "",
                    "coverUrl": (item.get("video") or {}).get("cover") or "",
                    "musicTitle": (item.get("music") or {}).get("title"),
                })
            except (KeyError, TypeError) as exc:
                errors.append(f"Failed to parse video {item.get('id') if isinstance(item, dict) else '?'}: {exc}")
        self.pause(options)
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=page_url,
            profile=profile,
            items=videos,
            source=self.name,
            errors=errors,
            started_at=started,
            completed_at=time.time(),
        )


class TikTokOEmbedStrategy(ScrapeStrategy):
    """oEmbed metadata: one video entry, no profile, no engagement counts."""

    name = "embed"

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        doc = self.get_json(OEMBED_URL, options, headers={"Accept": "application/json"}, params={"url": url})
        if not isinstance(doc, dict):
            raise FetchError(OEMBED_URL, "unexpected oEmbed response")
        video_id = extract_video_id(url)
        videos = []
        if video_id is not None or doc.get("title"):
            videos.append({
                "id": video_id or doc.get("embed_product_id") or "",
                "description": doc.get("title") or "",
                "likeCount": 0,
                "commentCount": 0,
                "shareCount": 0,
                "viewCount": 0,
                "timestamp": None,
                "videoUrl": url,
                "coverUrl": doc.get("thumbnail_url") or "",
                "musicTitle": None,
                "authorName": doc.get("author_name"),
                "authorUrl": doc.get("author_url"),
            })
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=url,
            profile=None,
            items=videos,
            source=self.name,
            started_at=started,
            completed_at=time.time(),
        )


def scrape_tiktok(
    url: str,
    options: Optional[ScrapeOptions] = None,
    client: Optional[HttpClient] = None,
) -> PlatformScrapeResult:
    validate_platform_url(PLATFORM, url, DOMAINS)
    return run_strategy_chain(
        PLATFORM,
        url,
        TikTokRehydrationStrategy(client),
        TikTokOEmbedStrategy(client),
        options or ScrapeOptions(),
    )
