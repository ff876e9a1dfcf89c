"""Anti-bot page classifiers.

Every function here is pure: it looks at a response and reports what kind of
challenge page it is, if any. Nothing attempts to get past the challenge.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from bs4 import BeautifulSoup

_WIDGET_MARKERS = (
    ("recaptcha", re.compile(r"g-recaptcha|google\.com/recaptcha|recaptcha/api\.js", re.I)),
    ("hcaptcha", re.compile(r"h-captcha|hcaptcha\.com", re.I)),
    ("turnstile", re.compile(r"cf-turnstile|challenges\.cloudflare\.com/turnstile", re.I)),
    ("arkose", re.compile(r"arkoselabs\.com|funcaptcha", re.I)),
)

# Only ever served in place of the requested page.
_CHALLENGE_MARKERS = (
    ("datadome", re.compile(r"captcha-delivery\.com|geo\.captcha-delivery", re.I)),
    ("generic", re.compile(r"verify (that )?you are (a )?human|are you a robot|unusual traffic from your", re.I)),
)

_BLOCK_STATUSES = (403, 429, 503)
_INTERSTITIAL_MAX_TEXT = 300

_CLOUDFLARE_BODY = re.compile(
    r"cf_chl_opt|cf-browser-verification|/cdn-cgi/challenge-platform|"
    r"<title>\s*Just a moment\.\.\.\s*</title>|Attention Required! \| Cloudflare",
    re.I,
)


@dataclass(frozen=True)
class Detection:
    kind: str
    reason: str


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""
    for key, value in headers.items():
        if key.lower() == name:
            return str(value)
    return ""


def is_interstitial(body: str) -> bool:
    """A page with almost no visible text and no links to follow."""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    if soup.find("a", href=True) is not None:
        return False
    return len(soup.get_text(" ", strip=True)) <= _INTERSTITIAL_MAX_TEXT


def detect_captcha(body: str, headers: Optional[Mapping[str, str]] = None, status_code: Optional[int] = None) -> Optional[Detection]:
    """Report a CAPTCHA challenge page.

    Challenge text is always a hit. A CAPTCHA widget (reCAPTCHA on a login
    form, say) only counts when it comes with a block status or stands in for
    the page as a bare interstitial.
    """
    if not body:
        return None
    for name, pattern in _CHALLENGE_MARKERS:
        match = pattern.search(body)
        if match:
            return Detection(kind=f"captcha:{name}", reason=f"marker {match.group(0)!r} in body")
    for name, pattern in _WIDGET_MARKERS:
        match = pattern.search(body)
        if match is None:
            continue
        if status_code in _BLOCK_STATUSES:
            return Detection(kind=f"captcha:{name}", reason=f"marker {match.group(0)!r} with HTTP {status_code}")
        if is_interstitial(body):
            return Detection(kind=f"captcha:{name}", reason=f"marker {match.group(0)!r} on an interstitial page")
        return None
    return None


def detect_cloudflare(body: str, headers: Optional[Mapping[str, str]] = None, status_code: Optional[int] = None) -> Optional[Detection]:
    if _header(headers, "cf-mitigated").lower() == "challenge":
        return Detection(kind="cloudflare", reason="cf-mitigated: challenge header")
    match = _CLOUDFLARE_BODY.search(body or "")
    if match:
        return Detection(kind="cloudflare", reason=f"marker {match.group(0)!r} in body")
    if "cloudflare" in _header(headers, "server").lower() and status_code in (403, 503):
        return Detection(kind="cloudflare", reason=f"cloudflare server with HTTP {status_code}")
    return None


def classify_response(body: str, headers: Optional[Mapping[str, str]] = None, status_code: Optional[int] = None) -> Optional[Detection]:
    """First detector hit, Cloudflare before CAPTCHA, or None for a clean page."""
    return detect_cloudflare(body, headers, status_code) or detect_captcha(body, headers, status_code)
