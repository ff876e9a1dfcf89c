from __future__ import annotations

import json
import os
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from ..errors import FetchError, InvalidUrlError
from ..http_client import HttpClient
from .chain import PlatformScrapeResult, ScrapeOptions, ScrapeStrategy, run_strategy_chain, validate_platform_url

PLATFORM = "twitter"
DOMAINS = ("twitter.com", "x.com")

_HANDLE = re.compile(r"^[A-Za-z0-9_]{1,15}$")
_RESERVED = {
    "home", "explore", "notifications", "messages", "i", "settings",
    "search", "compose", "login", "signup", "tos", "privacy",
}

# Public bearer token shipped with the x.com web client.
_WEB_BEARER = (
    "AAAAAAAAAAAAAAAAAAAAANRILgAAAAAAnNwIzUejRCOuH5E6I8xnZz4puTs"
    "%3D1Zv7ttfk8LF81IUq16cHjhLTvJu4FA33AGWWjCpTnA"
)
GUEST_ACTIVATE_URL = "https://api.x.com/1.1/guest/activate.json"
USER_SHOW_URL = "https://api.x.com/1.1/users/show.json"
USER_TWEETS_URL = "https://x.com/i/api/graphql/V7H0Ap3_Hh2FyS75OCDO3Q/UserTweets"

_TIMELINE_FEATURES = {
    "rweb_lists_timeline_redesign_enabled": True,
    "responsive_web_graphql_exclude_directive_enabled": True,
    "verified_phone_label_enabled": False,
    "creator_subscriptions_tweet_preview_api_enabled": True,
    "responsive_web_graphql_timeline_navigation_enabled": True,
    "responsive_web_graphql_skip_user_profile_image_extensions_enabled": False,
    "tweetypie_unmention_optimization_enabled": True,
    "responsive_web_edit_tweet_api_enabled": True,
    "view_counts_everywhere_api_enabled": True,
    "longform_notetweets_consumption_enabled": True,
    "freedom_of_speech_not_reach_fetch_enabled": True,
    "standardized_nudges_misinfo": True,
    "longform_notetweets_rich_text_read_enabled": True,
    "responsive_web_enhance_cards_enabled": False,
}


def extract_handle(url: str) -> Optional[str]:
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments:
        return None
    handle = segments[0].lstrip("@")
    if not _HANDLE.match(handle) or handle.lower() in _RESERVED:
        return None
    return handle


def profile_url(handle: str) -> str:
    return f"https://x.com/{handle}"


def syndication_url(handle: str) -> str:
    return f"https://syndication.twitter.com/srv/timeline-profile/screen-name/{handle}"


def _require_handle(url: str) -> str:
    handle = extract_handle(url)
    if handle is None:
        raise InvalidUrlError(url, "no Twitter profile handle in URL")
    return handle


class TwitterGuestApiStrategy(ScrapeStrategy):
    """Guest token + REST user lookup + GraphQL timeline."""

    name = "guest-api"

    def __init__(self, client: Optional[HttpClient] = None, bearer_token: Optional[str] = None) -> None:
        super().__init__(client)
        self._bearer = bearer_token or os.environ.get("TWITTER_BEARER_TOKEN") or _WEB_BEARER

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        handle = _require_handle(url)
        auth = {"Authorization": f"Bearer {self._bearer}"}

        token_doc = self.get_json_post(GUEST_ACTIVATE_URL, options, auth)
        guest_token = token_doc.get("guest_token") if isinstance(token_doc, dict) else None
        if not guest_token:
            raise FetchError(GUEST_ACTIVATE_URL, "guest token activation returned no token")
        headers = {**auth, "x-guest-token": str(guest_token)}

        user = self.get_json(USER_SHOW_URL, options, headers=headers, params={"screen_name": handle})
        profile = None
        tweets: List[Dict[str, Any]] = []
        errors: List[str] = []
        if isinstance(user, dict) and user.get("id_str"):
            profile = {
                "handle": user.get("screen_name") or handle,
                "name": user.get("name") or handle,
                "bio": user.get("description") or "",
                "followerCount": user.get("followers_count") or 0,
                "followingCount": user.get("friends_count") or 0,
                "tweetCount": user.get("statuses_count") or 0,
                "isVerified": bool(user.get("verified")),
                "profileImageUrl": user.get("profile_image_url_https") or user.get("profile_image_url") or "",
                "bannerUrl": user.get("profile_banner_url"),
            }
            for legacy in self._timeline(user["id_str"], headers, options):
                try:
                    tweets.append(_tweet_from_legacy(legacy))
                except (KeyError, TypeError) as exc:
                    errors.append(f"Failed to parse tweet {legacy.get('id_str')}: {exc}")
                if len(tweets) >= options.max_items:
                    break
        self.pause(options)
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=profile_url(handle),
            profile=profile,
            items=tweets,
            source=self.name,
            errors=errors,
            started_at=started,
            completed_at=time.time(),
        )

    def get_json_post(self, url: str, options: ScrapeOptions, headers: Dict[str, str]) -> Any:
        resp = self.post(url, options, headers={**headers, "Content-Type": "application/json"})
        try:
            return json.loads(resp.body)
        except json.JSONDecodeError as exc:
            raise FetchError(url, f"invalid JSON response: {exc}", resp.status_code) from exc

    def _timeline(self, user_id: str, headers: Dict[str, str], options: ScrapeOptions) -> List[Dict[str, Any]]:
        variables = {
            "userId": user_id,
            "count": options.max_items,
            "includePromotedContent": False,
            "withVoice": False,
            "withV2Timeline": True,
        }
        doc = self.get_json(
            USER_TWEETS_URL,
            options,
            headers=headers,
            params={"variables": json.dumps(variables), "features": json.dumps(_TIMELINE_FEATURES)},
        )
        instructions = (
            ((((doc or {}).get("data") or {}).get("user") or {}).get("result") or {})
            .get("timeline_v2", {}).get("timeline", {}).get("instructions", [])
        )
        tweets = []
        for instruction in instructions:
            if instruction.get("type") != "TimelineAddEntries":
                continue
            for entry in instruction.get("entries") or []:
                legacy = (
                    ((entry.get("content") or {}).get("itemContent") or {})
                    .get("tweet_results", {}).get("result", {}).get("legacy")
                )
                if legacy:
                    tweets.append(legacy)
        return tweets


def _tweet_from_legacy(legacy: Dict[str, Any]) -> Dict[str, Any]:
    entities = legacy.get("extended_entities") or legacy.get("entities") or {}
    media = [m["media_url_https"] for m in entities.get("media") or [] if m.get("media_url_https")]
    return {
        "id": legacy["id_str"],
        "text": legacy.get("full_text") or legacy.get("text") or "",
        "likeCount": legacy.get("favorite_count") or 0,
        "retweetCount": legacy.get("retweet_count") or 0,
        "replyCount": legacy.get("reply_count") or 0,
        "timestamp": legacy.get("created_at"),
        "mediaUrls": media,
        "isRetweet": "retweeted_status" in legacy or "retweeted_status_result" in legacy,
    }


class TwitterSyndicationStrategy(ScrapeStrategy):
    """The embeddable timeline HTML. No engagement counts."""

    name = "syndication"

    def scrape(self, url: str, options: ScrapeOptions) -> PlatformScrapeResult:
        started = time.time()
        handle = _require_handle(url)
        resp = self.get(syndication_url(handle), options, headers=self.page_headers("syndication.twitter.com"))
        soup = BeautifulSoup(resp.body, "html.parser")

        profile = None
        header = soup.select_one(".timeline-Header")
        if header is not None:
            name_el = header.select_one(".timeline-Header-title")
            bio_el = header.select_one(".timeline-Header-bio")
            avatar = header.select_one(".timeline-Header-avatar img")
            profile = {
                "handle": handle,
                "name": (name_el.get_text(strip=True) if name_el else "") or handle,
                "bio": bio_el.get_text(strip=True) if bio_el else "",
                "followerCount": 0,
                "followingCount": 0,
                "tweetCount": 0,
                "isVerified": header.select_one(".Icon--verified") is not None,
                "profileImageUrl": avatar.get("src", "") if avatar else "",
                "bannerUrl": None,
            }

        tweets = []
        for el in soup.select(".timeline-Tweet")[: options.max_items]:
            text_el = el.select_one(".timeline-Tweet-text")
            time_el = el.select_one("time")
            tweets.append({
                "id": el.get("data-tweet-id") or (el.get("id") or "").replace("tweet-", ""),
                "text": text_el.get_text(strip=True) if text_el else "",
                "likeCount": 0,
                "retweetCount": 0,
                "replyCount": 0,
                "timestamp": time_el.get("datetime") if time_el else None,
                "mediaUrls": [img["src"] for img in el.select(".timeline-Tweet-media img") if img.get("src")],
                "isRetweet": el.select_one(".timeline-Tweet-retweetCredit") is not None,
            })
        self.pause(options)
        return PlatformScrapeResult(
            platform=PLATFORM,
            profile_url=profile_url(handle),
            profile=profile,
            items=tweets,
            source=self.name,
            started_at=started,
            completed_at=time.time(),
        )


def scrape_twitter(
    url: str,
    options: Optional[ScrapeOptions] = None,
    client: Optional[HttpClient] = None,
) -> PlatformScrapeResult:
    validate_platform_url(PLATFORM, url, DOMAINS)
    _require_handle(url)
    return run_strategy_chain(
        PLATFORM,
        url,
        TwitterGuestApiStrategy(client),
        TwitterSyndicationStrategy(client),
        options or ScrapeOptions(),
    )
