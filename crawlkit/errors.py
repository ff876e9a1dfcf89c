from __future__ import annotations

from typing import Optional


class CrawlkitError(Exception):
    """Base class for every error raised by crawlkit."""


class ValidationError(CrawlkitError, ValueError):
    """Input rejected before it reaches the queue."""


class InvalidUrlError(ValidationError):
    def __init__(self, url: str, reason: str = "malformed URL") -> None:
        super().__init__(f"{reason}: {url!r}")
        self.url = url


class UnsupportedJobTypeError(ValidationError):
    pass


class UnsupportedFormatError(ValidationError):
    pass


class PlatformUrlError(ValidationError):
    def __init__(self, platform: str, url: str, domains) -> None:
        super().__init__(
            f"{url!r} is not a {platform} URL (expected one of: {', '.join(domains)})"
        )
        self.platform = platform
        self.url = url


class FetchError(CrawlkitError):
    """A single fetch failed. Always carries the URL that was being fetched."""

    retryable = False

    def __init__(self, url: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code
        self.message = message


class TransientFetchError(FetchError):
    retryable = True


class RequestTimeoutError(TransientFetchError):
    pass


class AntiBotError(FetchError):
    """Blocked by the target (403/429 or a detected challenge page)."""

    retryable = True

    def __init__(self, url: str, kind: str, status_code: Optional[int] = None) -> None:
        super().__init__(url, f"blocked by anti-bot protection: {kind}", status_code)
        self.kind = kind


class StrategyChainError(CrawlkitError):
    def __init__(self, platform: str, primary_error: str, fallback_error: str) -> None:
        super().__init__(
            f"{platform}: primary strategy failed ({primary_error}); "
            f"fallback strategy failed ({fallback_error})"
        )
        self.platform = platform
        self.primary_error = primary_error
        self.fallback_error = fallback_error

