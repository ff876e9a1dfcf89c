from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional


@dataclass
class _ProxyUsage:
    url: str
    last_used: float = 0.0
    blocked: bool = False


class ProxyRotator:
    """Least-recently-used proxy selection per host.

    Never hands out the same proxy twice in a row for one host while another
    unblocked proxy exists.
    """

    def __init__(self, proxy_urls: Iterable[str] = (), clock: Callable[[], float] = time.monotonic) -> None:
        self._proxies: List[_ProxyUsage] = [_ProxyUsage(url=u.strip()) for u in proxy_urls if u and u.strip()]
        self._last_for_host: Dict[str, str] = {}
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_string(cls, raw: Optional[str]) -> "ProxyRotator":
        """Build from a comma-separated list (the PROXY_URLS format)."""
        return cls((raw or "").split(","))

    def get_proxy(self, host: str) -> Optional[str]:
        with self._lock:
            available = [p for p in self._proxies if not p.blocked]
            if not available:
                return None
            last = self._last_for_host.get(host)
            candidates = [p for p in available if p.url != last] or available
            chosen = min(candidates, key=lambda p: p.last_used)
            chosen.last_used = self._clock()
            self._last_for_host[host] = chosen.url
            return chosen.url

    def mark_blocked(self, proxy_url: str) -> None:
        with self._lock:
            for proxy in self._proxies:
                if proxy.url == proxy_url:
                    proxy.blocked = True

    def reset_all(self) -> None:
        with self._lock:
            for proxy in self._proxies:
                proxy.blocked = False
                proxy.last_used = 0.0
            self._last_for_host.clear()

    @property
    def available_count(self) -> int:
        return sum(1 for p in self._proxies if not p.blocked)
