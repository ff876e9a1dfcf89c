from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional

from .fingerprint import FingerprintGenerator
from .models import Session
from .proxy_rotator import ProxyRotator

logger = logging.getLogger(__name__)


class SessionPool:
    """Host-scoped identities with a forward-only health lifecycle.

    Each host has at most one current session. ``good -> degraded -> retired``;
    a retired session is evicted and never handed out again, so the next
    ``get_session`` for that host mints a new id and fingerprint.
    """

    def __init__(
        self,
        fingerprints: Optional[FingerprintGenerator] = None,
        proxies: Optional[ProxyRotator] = None,
        max_sessions: int = 100,
        max_error_score: int = 3,
        max_usage_count: int = 50,
    ) -> None:
        self._fingerprints = fingerprints or FingerprintGenerator()
        self._proxies = proxies or ProxyRotator()
        self._max_sessions = max(1, max_sessions)
        self._max_error_score = max(1, max_error_score)
        self._max_usage_count = max(1, max_usage_count)
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._by_host: Dict[str, str] = {}
        self._retire_listeners: List[Callable[[Session], None]] = []

    def add_retire_listener(self, listener: Callable[[Session], None]) -> None:
        """Call ``listener(session)`` whenever a session is retired, whatever the reason."""
        with self._lock:
            self._retire_listeners.append(listener)

    def get_session(self, host: str) -> Session:
        host = host.lower()
        with self._lock:
            session_id = self._by_host.get(host)
            session = self._sessions.get(session_id) if session_id else None
            if session is not None and session.usage_count >= self._max_usage_count:
                self._retire_locked(session, reason="usage limit")
                session = None
            if session is None:
                session = self._create_locked(host)
            session.usage_count += 1
            return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def mark_good(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.error_score = max(0, session.error_score - 1)

    def mark_bad(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.error_score += 1
            if session.health == "good":
                session.health = "degraded"
            if session.error_score >= self._max_error_score:
                self._retire_locked(session, reason="error score")

    def retire(self, session_id: str, proxy_blocked: bool = False) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            if proxy_blocked and session.proxy:
                self._proxies.mark_blocked(session.proxy)
            self._retire_locked(session, reason="retired")

    def _retire_locked(self, session: Session, reason: str) -> None:
        session.health = "retired"
        self._sessions.pop(session.id, None)
        if self._by_host.get(session.host) == session.id:
            del self._by_host[session.host]
        self._fingerprints.invalidate(session.fingerprint.id)
        logger.info("Session %s for %s retired (%s)", session.id, session.host, reason)
        for listener in self._retire_listeners:
            try:
                listener(session)
            except Exception:  # noqa: BLE001
                logger.exception("Retire listener failed for session %s", session.id)

    def _create_locked(self, host: str) -> Session:
        if len(self._sessions) >= self._max_sessions:
            self._evict_worst_locked()
        session = Session(
            id=str(uuid.uuid4()),
            host=host,
            fingerprint=self._fingerprints.generate(host),
            proxy=self._proxies.get_proxy(host),
        )
        self._sessions[session.id] = session
        self._by_host[host] = session.id
        return session

    def _evict_worst_locked(self) -> None:
        worst = max(
            self._sessions.values(),
            key=lambda s: s.error_score * 100 + s.usage_count,
            default=None,
        )
        if worst is not None:
            self._retire_locked(worst, reason="pool full")

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total": len(self._sessions),
                "good": sum(1 for s in self._sessions.values() if s.health == "good"),
                "degraded": sum(1 for s in self._sessions.values() if s.health == "degraded"),
            }
