from __future__ import annotations

import random
import threading
import uuid
from collections import OrderedDict
from typing import Optional

from .models import Fingerprint
from .stealth_headers import build_identity, get_stealth_headers

MAX_CACHE_SIZE = 1000

_SCREENS = ((1920, 1080), (2560, 1440), (1536, 864), (1440, 900), (1366, 768))


class FingerprintGenerator:
    """Generates identity bundles and remembers the most recent ones.

    A fingerprint is bound to one session for its whole lifetime; the header
    set is frozen at generation time so repeated requests look identical.
    """

    def __init__(self, rng: Optional[random.Random] = None, max_cache_size: int = MAX_CACHE_SIZE) -> None:
        self._rng = rng or random.Random()
        self._max_cache_size = max_cache_size
        self._lock = threading.Lock()
        self._cache: "OrderedDict[str, Fingerprint]" = OrderedDict()

    def generate(self, host: str = "", browser: Optional[str] = None) -> Fingerprint:
        with self._lock:
            identity = build_identity(self._rng, browser)
            headers = get_stealth_headers(host or "localhost", rng=self._rng, identity=identity)
            fingerprint = Fingerprint(
                id=str(uuid.uuid4()),
                user_agent=str(identity["user_agent"]),
                headers=headers,
                browser=str(identity["browser"]),
                platform=str(identity["platform"]),
                impersonate=str(identity["impersonate"]),
                chromium_version=identity["chromium_version"],  # type: ignore[arg-type]
                screen=self._rng.choice(_SCREENS),
                locale=headers["Accept-Language"].split(",", 1)[0],
            )
            if len(self._cache) >= self._max_cache_size:
                self._cache.popitem(last=False)
            self._cache[fingerprint.id] = fingerprint
            return fingerprint

    def get(self, fingerprint_id: str) -> Optional[Fingerprint]:
        with self._lock:
            return self._cache.get(fingerprint_id)

    def invalidate(self, fingerprint_id: str) -> None:
        with self._lock:
            self._cache.pop(fingerprint_id, None)

    @property
    def cache_size(self) -> int:
        return len(self._cache)
