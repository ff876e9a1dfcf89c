from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import InvalidUrlError

TRACKING_PARAMS = frozenset(
    {
        "fbclid",
        "gclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "ref",
        "yclid",
        "igshid",
    }
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def normalize_url(url: str) -> str:
    """Canonicalize a URL so that logically identical URLs compare equal.

    Lowercases scheme and host, drops the default port and the fragment,
    removes tracking parameters, sorts the query and strips a trailing slash.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrlError(str(url), "empty URL")
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        raise InvalidUrlError(url)

    host = parts.hostname.lower()
    try:
        port = parts.port
    except ValueError as exc:
        raise InvalidUrlError(url, "invalid port") from exc
    netloc = host if port in (None, _DEFAULT_PORTS[scheme]) else f"{host}:{port}"
    if parts.username:
        auth = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
        netloc = f"{auth}@{netloc}"

    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    ]
    query = urlencode(sorted(query_pairs))

    path = parts.path.rstrip("/")

    return urlunsplit((scheme, netloc, path, query, ""))


def normalize_unique_key(url: str) -> str:
    """Identity key used to deduplicate requests."""
    return normalize_url(url)


def hostname_of(url: str) -> str:
    host = urlsplit(url).hostname
    if not host:
        raise InvalidUrlError(url)
    return host.lower()
