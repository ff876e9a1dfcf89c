from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from curl_cffi import requests as curl_requests

from .errors import RequestTimeoutError, TransientFetchError

_CURLE_OPERATION_TIMEDOUT = 28


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: str
    headers: Dict[str, str]
    url: str

    def json(self) -> Any:
        return json.loads(self.body)


class HttpClient:
    """HTTP collaborator: (method, url, headers, timeout) -> status/body/headers.

    With an ``impersonate`` target, requests go through curl_cffi so the TLS
    and HTTP/2 fingerprint matches a real browser; cookie jars are kept per
    ``session_key`` so one crawl identity keeps its cookies. Without one,
    plain ``requests`` is used.
    """

    def __init__(self, timeout: float = 30.0, impersonate: Optional[str] = None) -> None:
        self._timeout = timeout
        self._impersonate = impersonate
        self._lock = threading.Lock()
        self._curl_sessions: Dict[str, curl_requests.Session] = {}

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        json_body: Optional[Any] = None,
        timeout: Optional[float] = None,
        proxy: Optional[str] = None,
        impersonate: Optional[str] = None,
        session_key: Optional[str] = None,
    ) -> HttpResponse:
        timeout = self._timeout if timeout is None else timeout
        impersonate = impersonate or self._impersonate
        proxies = {"http": proxy, "https": proxy} if proxy else None
        if impersonate:
            return self._curl_request(
                method, url, headers, params, data, json_body, timeout, proxies, impersonate, session_key
            )
        try:
            resp = requests.request(
                method=method,
                url=url,
                headers=headers,
                params=params or None,
                data=data,
                json=json_body,
                timeout=timeout,
                proxies=proxies,
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError(url, f"request timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientFetchError(url, f"network error: {type(exc).__name__}") from exc
        return HttpResponse(
            status_code=resp.status_code,
            body=resp.text,
            headers={k: v for k, v in resp.headers.items()},
            url=resp.url,
        )

    def _curl_request(self, method, url, headers, params, data, json_body, timeout, proxies, impersonate, session_key) -> HttpResponse:
        session = self._session_for(session_key)
        try:
            resp = session.request(
                method=method,
                url=url,
                headers=headers,
                params=params or None,
                data=data,
                json=json_body,
                timeout=timeout,
                proxies=proxies,
                impersonate=impersonate,
            )
        except curl_requests.RequestsError as exc:
            if getattr(exc, "code", None) == _CURLE_OPERATION_TIMEDOUT or "timed out" in str(exc).lower():
                raise RequestTimeoutError(url, f"request timed out after {timeout}s") from exc
            raise TransientFetchError(url, f"network error: {type(exc).__name__}") from exc
        finally:
            if session_key is None:
                session.close()
        return HttpResponse(
            status_code=resp.status_code,
            body=resp.text,
            headers={k: v for k, v in resp.headers.items()},
            url=str(resp.url),
        )

    def _session_for(self, session_key: Optional[str]) -> curl_requests.Session:
        if session_key is None:
            return curl_requests.Session()
        with self._lock:
            session = self._curl_sessions.get(session_key)
            if session is None:
                session = curl_requests.Session()
                self._curl_sessions[session_key] = session
            return session

    def discard_session(self, session_key: str) -> None:
        with self._lock:
            session = self._curl_sessions.pop(session_key, None)
        if session is not None:
            session.close()

    def get(self, url: str, **kwargs: Any) -> HttpResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> HttpResponse:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        with self._lock:
            sessions = list(self._curl_sessions.values())
            self._curl_sessions.clear()
        for session in sessions:
            session.close()
