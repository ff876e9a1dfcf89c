from __future__ import annotations

import re
import time
from collections import Counter
from typing import Any, Dict, List

from bs4 import BeautifulSoup

TITLE_BAND = (30, 60)
DESCRIPTION_BAND = (120, 160)
REQUIRED_OG_TAGS = ("og:title", "og:description", "og:image", "og:url")

_WORD = re.compile(r"[a-z]+")


def _band_check(value: str, band: tuple, label: str, missing_penalty: int, short_penalty: int, issues: List[str]) -> int:
    low, high = band
    length = len(value)
    if length == 0:
        issues.append(f"Missing {label}")
        return missing_penalty
    if length < low:
        issues.append(f"{label.capitalize()} too short (should be {low}-{high} characters)")
        return short_penalty
    if length > high:
        issues.append(f"{label.capitalize()} too long (should be {low}-{high} characters)")
        return 5
    return 0


def top_keywords(text: str, limit: int = 10, min_length: int = 5) -> List[Dict[str, Any]]:
    words = [w for w in _WORD.findall(text.lower()) if len(w) >= min_length]
    return [{"word": w, "count": c} for w, c in Counter(words).most_common(limit)]


def analyze_seo(html: str, url: str) -> Dict[str, Any]:
    """On-page SEO report for one HTML document, scored 0-100.

    Deductions: missing/short/long title and meta description, missing or
    repeated H1, no H2, images without alt text, and each missing Open Graph
    tag (3 points apiece).
    """
    soup = BeautifulSoup(html or "", "html.parser")
    issues: List[str] = []
    score = 100

    title = soup.title.get_text(strip=True) if soup.title else ""
    desc_tag = soup.find("meta", attrs={"name": re.compile("^description$", re.I)})
    description = (desc_tag.get("content") or "").strip() if desc_tag else ""
    score -= _band_check(title, TITLE_BAND, "page title", 20, 10, issues)
    score -= _band_check(description, DESCRIPTION_BAND, "meta description", 15, 8, issues)

    h1_count = len(soup.find_all("h1"))
    h2_count = len(soup.find_all("h2"))
    h3_count = len(soup.find_all("h3"))
    if h1_count == 0:
        issues.append("Missing H1 heading")
        score -= 15
    elif h1_count > 1:
        issues.append("Multiple H1 headings found (should be only one)")
        score -= 5
    if h2_count == 0:
        issues.append("No H2 headings found")
        score -= 5

    images = soup.find_all("img")
    missing_alt = sum(1 for img in images if not (img.get("alt") or "").strip())
    if images and missing_alt == len(images):
        issues.append("Images missing alt text")
        score -= 10
    elif missing_alt:
        issues.append(f"{missing_alt} images missing alt text")
        score -= 5

    og = {
        str(tag.get("property")).lower()
        for tag in soup.find_all("meta", attrs={"property": True})
        if tag.get("content")
    }
    missing_og = [t for t in REQUIRED_OG_TAGS if t not in og]
    if missing_og:
        issues.append(f"Missing Open Graph tags: {', '.join(missing_og)}")
        score -= 3 * len(missing_og)

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return {
        "url": url,
        "score": max(0, min(100, score)),
        "title": {"value": title, "length": len(title), "optimal": TITLE_BAND[0] <= len(title) <= TITLE_BAND[1]},
        "description": {
            "value": description,
            "length": len(description),
            "optimal": DESCRIPTION_BAND[0] <= len(description) <= DESCRIPTION_BAND[1],
        },
        "headings": {"h1Count": h1_count, "h2Count": h2_count, "h3Count": h3_count, "hasH1": h1_count > 0},
        "images": {"total": len(images), "withAlt": len(images) - missing_alt, "missingAlt": missing_alt},
        "missingOpenGraph": missing_og,
        "keywords": top_keywords(soup.get_text(" ", strip=True)),
        "issues": issues,
        "analyzedAt": time.time(),
    }
