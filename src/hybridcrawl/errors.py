"""
Error taxonomy for the crawl engine.

Every error raised by a fetcher, pool or worker derives from ``CrawlError`` and
carries a machine-readable ``ErrorCode`` plus a ``retryable`` hint that the
retry layer and batch reporting use.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error classes surfaced by the engine."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    UPSTREAM_STATUS = "UPSTREAM_STATUS"
    BROWSER_CRASH = "BROWSER_CRASH"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    PARSE_ERROR = "PARSE_ERROR"
    SESSION_ERROR = "SESSION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    CANCELLED = "CANCELLED"
    WORKER_PANIC = "WORKER_PANIC"


class CrawlError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.NETWORK_ERROR
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details: Dict[str, Any] = dict(details or {})

    def with_detail(self, key: str, value: Any) -> CrawlError:
        self.details[key] = value
        return self

    def temporary(self) -> bool:
        return self.retryable

    def __str__(self) -> str:
        cause = self.__cause__
        if cause is not None:
            return f"{self.code.value}: {self.message}: {cause}"
        return f"{self.code.value}: {self.message}"


class ValidationError(CrawlError):
    """Bad URL or selector, rejected before any network activity."""

    code = ErrorCode.VALIDATION


class NetworkError(CrawlError):
    """Connection-level failure."""

    code = ErrorCode.NETWORK_ERROR
    default_retryable = True


class FetchTimeoutError(NetworkError):
    """A request or navigation exceeded its deadline."""

    code = ErrorCode.TIMEOUT

    def timeout(self) -> bool:
        return True


class UpstreamStatusError(CrawlError):
    """The server answered with a non-success status."""

    code = ErrorCode.UPSTREAM_STATUS

    def __init__(self, status_code: int, url: str = "", **kwargs: Any) -> None:
        message = f"unexpected status {status_code}"
        if url:
            message = f"{message} for {url}"
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.url = url


class BrowserError(CrawlError):
    """The browser or one of its pages failed."""

    code = ErrorCode.BROWSER_CRASH
    default_retryable = True


class BrowserPoolError(BrowserError):
    """Browser pool could not be created."""


class BrowserPoolTimeoutError(BrowserPoolError):
    """No browser context became available in time."""

    code = ErrorCode.RESOURCE_EXHAUSTED

    def timeout(self) -> bool:
        return True


class BrowserPoolClosedError(BrowserPoolError):
    """The pool was closed while a context was requested."""

    code = ErrorCode.RESOURCE_EXHAUSTED
    default_retryable = False


class ParseError(CrawlError):
    code = ErrorCode.PARSE_ERROR


class SessionError(CrawlError):
    code = ErrorCode.SESSION_ERROR


class RateLimitExceededError(CrawlError):
    """Waiting for a token would exceed the caller's deadline."""

    code = ErrorCode.RATE_LIMITED
    default_retryable = True


class OperationCancelledError(CrawlError):
    """The caller's cancellation signal fired while waiting."""

    code = ErrorCode.CANCELLED


class RetryExhaustedError(CrawlError):
    """All retry attempts failed."""

    code = ErrorCode.NETWORK_ERROR

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"max retries ({attempts}) exceeded: {last_error}")
        self.attempts = attempts
        self.last_error = last_error

    def __str__(self) -> str:
        return self.message


class WorkerPanicError(CrawlError):
    """A job raised an unexpected exception inside a worker."""

    code = ErrorCode.WORKER_PANIC

    def __init__(self, url: str, original: BaseException) -> None:
        super().__init__(f"worker panic while processing {url}: {original!r}")
        self.url = url
        self.original = original

    def __str__(self) -> str:
        return self.message


class DownloadError(CrawlError):
    """A download request returned a non-success status."""

    code = ErrorCode.UPSTREAM_STATUS

    def __init__(self, status_code: int, body_snippet: str = "", url: str = "") -> None:
        message = f"HTTP {status_code}"
        if body_snippet:
            message = f"{message}: {body_snippet}"
        super().__init__(message)
        self.status_code = status_code
        self.body_snippet = body_snippet
        self.url = url

    def get_status_code(self) -> int:
        return self.status_code

    def __str__(self) -> str:
        return self.message
