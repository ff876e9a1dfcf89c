from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from ..errors import FetchError, InvalidUrlError
from ..http_client import HttpClient
from ..stealth_headers import ACCEPT_HTML, UserAgentPool
from .chain import PlatformScrapeResult, ScrapeOptions, ScrapeStrategy, run_strategy_chain, validate_platform_url

PLATFORM = "instagram"
DOMAINS = ("instagram.com", "instagr.am")

WEB_PROFILE_INFO_URL = "https://i.instagram.com/api/v1/users/web_profile_info/"
_WEB_APP_ID = "936619743392459"

_USERNAME = re.compile(r"^[A-Za-z0-9_.]{1,30}$")
_RESERVED = {"p", "reel", "reels", "explore", "stories", "accounts", "direct", "tv"}
_SHARED_DATA = re.compile(r"window\._sharedData\s*=\s*(\{.+?\});</script>", re.S)
_ADDITIONAL_DATA = re.compile(r"window\.__additionalDataLoaded\s*\([^,]+,\s*(\{.+?\})\);", re.S)


def extract_username(url: str) -> Optional[str]:
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments:
        return None
    username = segments[0].lstrip("@")
    if not _USERNAME.match(username) or username.lower() in _RESERVED:
        return None
    return username


def profile_url(username: str) -> str:
    return f"https://www.instagram.com/{username}/"


def _require_username(url: str) -> str:
    username = extract_username(url)
    if username is None:
        raise InvalidUrlError(url, "no Instagram username in URL")
    return username


def _profile_from_user(user: Dict[str, Any], username: str) -> Dict[str, Any]:
    return {
        "username": user.get("username") or username,
        "fullName": user.get("full_name") or "",
        "bio": user.get("biography") or "",
        "followerCount": (user.get("edge_followed_by") or {}).get("count", 0),
        "followingCount": (user.get("edge_follow") or {}).get("count", 0),
        "postCount": (user.get("edge_owner_to_timeline_media") or {}).get("count", 0),
        "isVerified": bool(user.get("is_verified")),
        "profilePicUrl": user.get("profile_pic_url_hd") or user.get("profile_pic_url") or "",
        "externalUrl": user.get("external_url"),
    }


def _post_from_node(node: Dict[str, Any]) -> Dict[str, Any]:
    is_video = node.get("__typename") == "GraphVideo" or node.get("is_video") is True
    media = [node["display_url"]] if node.get("display_url") else []
    for child in (node.get("edge_sidecar_to_children") or {}).get("edges") or []:
        child_url = (child.get("node") or {}).get("display_url")
        if child_url:
            media.append(child_url)
    caption_edges = (node.get("edge_media_to_caption") or {}).get("edges") or []
    likes = node.get("edge_liked_by") or node.get("edge_media_preview_like") or {}
    comments = node.get("edge_media_to_comment") or node.get("edge_media_preview_comment") or {}
    return {
        "id": node["id"],
        "shortcode": node.get("shortcode"),
        "caption": caption_edges[0]["node"].get("text", "") if caption_edges else "",
        "likeCount": likes.get("count", 0),
        "commentCount": comments.get("count", 0),
        "timestamp": node.get("taken_at_timestamp"),
        "mediaUrls": media,
        "isVideo": is_video,
        "videoUrl": node.get("video_url") if is_video else None,
    }


def _posts_from_user(user: Dict[str, Any], max_items: int, errors: List[str]) -> List[Dict[str, Any]]:
    posts: List[Dict[str, Any]] = []
    for edge in ((user.get("edge_owner_to_timeline_media") or {}).get("edges") or [])[:max_items]:
        node = (edge or {}).get("node")
        if not node:
            continue
        try:
            posts.append(_post_from_node(node))
        except (KeyError, TypeError, IndexError) as exc:
            errors.append(f"Failed to parse post {node.get('shortcode')}: {exc}")
    return posts


class InstagramWebProfileStrategy(ScrapeStrategy):
    """The JSON endpoint the web app uses to render a profile page."""

    name = "web-profile-info"

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        username = _require_username(url)
        headers = self.page_headers("www.instagram.com")
        headers.update({
            "Accept": "*/*",
            "X-IG-App-ID": _WEB_APP_ID,
            "X-Requested-With": "XMLHttpRequest",
            "Referer": profile_url(username),
        })
        doc = self.get_json(WEB_PROFILE_INFO_URL, options, headers=headers, params={"username": username})
        user = ((doc or {}).get("data") or {}).get("user") if isinstance(doc, dict) else None
        errors: List[str] = []
        profile = _profile_from_user(user, username) if user else None
        posts = _posts_from_user(user, options.max_items, errors) if user else []
        self.pause(options)
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=profile_url(username),
            profile=profile,
            items=posts,
            source=self.name,
            errors=errors,
            started_at=started,
            completed_at=time.time(),
        )


class InstagramSharedDataStrategy(ScrapeStrategy):
    """Profile HTML fetched as a mobile browser; data comes from the embedded _sharedData blob."""

    name = "shared-data"

    def __init__(self, client: Optional[HttpClient] = None, agents: Optional[UserAgentPool] = None) -> None:
        super().__init__(client)
        self._agents = agents or UserAgentPool()

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        username = _require_username(url)
        page_url = profile_url(username)
        headers = {
            "User-Agent": self._agents.get_agent_for_domain("instagram.com", "mobile"),
            "Accept": ACCEPT_HTML,
            "Accept-Language": "en-US,en;q=0.9",
        }
        html = self.get(page_url, options, headers=headers).body

        errors: List[str] = []
        data = None
        for pattern in (_SHARED_DATA, _ADDITIONAL_DATA):
            match = pattern.search(html)
            if not match:
                continue
            try:
                data = json.loads(match.group(1))
                break
            except json.JSONDecodeError as exc:
                errors.append(f"Failed to parse embedded profile JSON: {exc}")
        if data is None and not errors:
            raise FetchError(page_url, "no embedded profile data in page")

        user = _user_from_shared_data(data or {})
        profile = _profile_from_user(user, username) if user else None
        posts = _posts_from_user(user, options.max_items, errors) if user else []
        self.pause(options)
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=page_url,
            profile=profile,
            items=posts,
            source=self.name,
            errors=errors,
            started_at=started,
            completed_at=time.time(),
        )


def _user_from_shared_data(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    pages = (data.get("entry_data") or {}).get("ProfilePage") or []
    if pages:
        return ((pages[0] or {}).get("graphql") or {}).get("user")
    return (data.get("graphql") or {}).get("user")


def scrape_instagram(
    url: str,
    options: Optional[ScrapeOptions] = None,
    client: Optional[HttpClient] = None,
) -> PlatformScrapeResult:
    validate_platform_url(PLATFORM, url, DOMAINS)
    _require_username(url)
    return run_strategy_chain(
        PLATFORM,
        url,
        InstagramWebProfileStrategy(client),
        InstagramSharedDataStrategy(client),
        options or ScrapeOptions(),
    )
