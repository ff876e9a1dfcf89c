from __future__ import annotations

import random
import threading
from typing import Dict, List, Optional, Tuple

# (os label, UA platform token, Sec-Ch-Ua-Platform value)
_CHROMIUM_PLATFORMS: List[Tuple[str, str, str]] = [
    ("windows", "Windows NT 10.0; Win64; x64", '"Windows"'),
    ("macos", "Macintosh; Intel Mac OS X 10_15_7", '"macOS"'),
    ("linux", "X11; Linux x86_64", '"Linux"'),
]

# Chromium major version -> GREASE brand as shipped by that release.
_CHROMIUM_BRANDS: Dict[int, Tuple[str, str]] = {
    129: ("Not=A?Brand", "8"),
    130: ("Not?A_Brand", "99"),
    131: ("Not_A Brand", "24"),
    132: ("Not A(Brand", "8"),
}

_FIREFOX_VERSIONS = (132, 133, 134)
_SAFARI_VERSIONS = ("18.1", "18.2")

_ACCEPT_LANGUAGES = (
    "en-US,en;q=0.9",
    "en-US,en;q=0.8",
    "en-GB,en;q=0.9,en-US;q=0.8",
)

_REFERERS = (
    "https://www.google.com/",
    "https://www.bing.com/",
    "https://duckduckgo.com/",
)

ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"

USER_AGENTS = {
    "desktop": [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:132.0) Gecko/20100101 Firefox/132.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:133.0) Gecko/20100101 Firefox/133.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.2 Safari/605.1.15",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64; rv:133.0) Gecko/20100101 Firefox/133.0",
    ],
    "mobile": [
        "Mozilla/5.0 (iPhone; CPU iPhone OS 18_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.2 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (iPad; CPU OS 18_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.2 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Linux; Android 14; Pixel 8 Pro) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36",
        "Mozilla/5.0 (Linux; Android 14; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36",
    ],
}


class UserAgentPool:
    """Random User-Agent selection that never repeats back to back per domain."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._last_by_domain: Dict[str, str] = {}

    def get_agent(self, device_type: str = "desktop") -> str:
        return self._rng.choice(USER_AGENTS[device_type])

    def get_agent_for_domain(self, domain: str, device_type: str = "desktop") -> str:
        agents = USER_AGENTS[device_type]
        with self._lock:
            last = self._last_by_domain.get(domain)
            candidates = [ua for ua in agents if ua != last] or agents
            agent = self._rng.choice(candidates)
            self._last_by_domain[domain] = agent
            return agent


def sec_ch_ua(version: int) -> str:
    brand, brand_version = _CHROMIUM_BRANDS[version]
    return f'"Chromium";v="{version}", "{brand}";v="{brand_version}", "Google Chrome";v="{version}"'


def build_identity(rng: random.Random, browser: Optional[str] = None) -> Dict[str, object]:
    """Pick a browser identity whose UA and client hints agree with each other."""
    browser = browser or rng.choice(("chrome", "chrome", "chrome", "firefox", "safari"))
    if browser == "chrome":
        version = rng.choice(sorted(_CHROMIUM_BRANDS))
        os_label, token, ch_platform = rng.choice(_CHROMIUM_PLATFORMS)
        user_agent = (
            f"Mozilla/5.0 ({token}) AppleWebKit/537.36 (KHTML, like Gecko) "
            f"Chrome/{version}.0.0.0 Safari/537.36"
        )
        client_hints = {
            "Sec-Ch-Ua": sec_ch_ua(version),
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": ch_platform,
        }
        return {
            "browser": "chrome",
            "platform": os_label,
            "chromium_version": version,
            "user_agent": user_agent,
            "client_hints": client_hints,
            "impersonate": "chrome",
        }
    if browser == "firefox":
        version = rng.choice(_FIREFOX_VERSIONS)
        os_label, token = rng.choice(
            [
                ("windows", "Windows NT 10.0; Win64; x64"),
                ("macos", "Macintosh; Intel Mac OS X 10.15"),
                ("linux", "X11; Linux x86_64"),
            ]
        )
        return {
            "browser": "firefox",
            "platform": os_label,
            "chromium_version": None,
            "user_agent": f"Mozilla/5.0 ({token}; rv:{version}.0) Gecko/20100101 Firefox/{version}.0",
            "client_hints": {},
            "impersonate": "firefox",
        }
    if browser == "safari":
        version = rng.choice(_SAFARI_VERSIONS)
        return {
            "browser": "safari",
            "platform": "macos",
            "chromium_version": None,
            "user_agent": (
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
                f"(KHTML, like Gecko) Version/{version} Safari/605.1.15"
            ),
            "client_hints": {},
            "impersonate": "safari",
        }
    raise ValueError(f"Unknown browser: {browser}")


def get_stealth_headers(
    host: str,
    rng: Optional[random.Random] = None,
    browser: Optional[str] = None,
    identity: Optional[Dict[str, object]] = None,
) -> Dict[str, str]:
    """Browser-plausible request headers for ``host``.

    Values vary between calls but always agree with each other: client hints
    only accompany Chromium UAs and name the same version and OS. Pass a
    seeded ``rng`` for reproducible output.
    """
    rng = rng or random.Random()
    identity = identity or build_identity(rng, browser)

    headers: Dict[str, str] = {
        "User-Agent": str(identity["user_agent"]),
        "Accept": ACCEPT_HTML,
        "Accept-Language": rng.choice(_ACCEPT_LANGUAGES),
        "Accept-Encoding": "gzip, deflate, br",
        "Upgrade-Insecure-Requests": "1",
    }
    headers.update(identity["client_hints"])  # type: ignore[arg-type]

    referer_roll = rng.random()
    if referer_roll < 0.4:
        headers["Referer"] = rng.choice(_REFERERS)
        headers["Sec-Fetch-Site"] = "cross-site"
    elif referer_roll < 0.6:
        headers["Referer"] = f"https://{host}/"
        headers["Sec-Fetch-Site"] = "same-origin"
    else:
        headers["Sec-Fetch-Site"] = "none"
    headers["Sec-Fetch-Mode"] = "navigate"
    headers["Sec-Fetch-Dest"] = "document"
    headers["Sec-Fetch-User"] = "?1"

    if rng.random() < 0.3:
        headers["DNT"] = "1"
    return headers
