"""
Core contracts and data structures for HybridCrawl.

Architecture Overview:
- Fetchers (static, dynamic, hybrid) share a single ``Scraper`` protocol
- Cache, rate limiter and session store are injected behind protocols
- Batch and download pools turn per-job failures into result records
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

# ============================================================================
# Enums and Constants
# ============================================================================

DEFAULT_SELECTOR = "body"
DEFAULT_TIMEOUT_SECONDS = 30.0


class ScrapeMode(Enum):
    """Requested fetch mode."""

    AUTO = "auto"
    STATIC = "static"
    SPA = "spa"


class MediaType(Enum):
    """Asset classes the media extractor understands."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    ALL = "all"


# ============================================================================
# Core Dataclasses
# ============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RequestOptions:
    """Input to every fetch. Immutable; derive variants with ``dataclasses.replace``."""

    url: str
    mode: ScrapeMode = ScrapeMode.AUTO
    selector: str = ""
    fields: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    session_name: str = ""
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    proxy: str = ""
    wait_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.timeout < 0:
            raise ValueError("timeout cannot be negative")
        if self.wait_seconds < 0:
            raise ValueError("wait_seconds cannot be negative")

    @property
    def uses_default_selector(self) -> bool:
        return self.selector in ("", DEFAULT_SELECTOR)


@dataclass(frozen=True)
class PageData:
    """Result of a single fetch. Produced once and never mutated."""

    url: str
    status_code: int = 0
    title: str = ""
    content: str = ""
    html: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, str] = field(default_factory=dict)
    links: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)
    fields: Dict[str, str] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=_utcnow)
    response_time_ms: int = 0
    strategy: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status_code": self.status_code,
            "title": self.title,
            "content": self.content,
            "html": self.html,
            "headers": dict(self.headers),
            "metadata": dict(self.metadata),
            "links": list(self.links),
            "images": list(self.images),
            "scripts": list(self.scripts),
            "fields": dict(self.fields),
            "fetched_at": self.fetched_at.isoformat(),
            "response_time_ms": self.response_time_ms,
            "strategy": self.strategy,
        }


@dataclass
class ScrapeResult:
    """Outcome of one batch job. Exactly one is produced per submitted request."""

    url: str
    data: Optional[PageData] = None
    error: Optional[BaseException] = None
    panicked: bool = False
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None and self.data is not None


@dataclass
class DownloadOptions:
    """Options shared by every job of a download batch."""

    output_dir: Path = Path(".")
    filename: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    resume: bool = True


@dataclass
class DownloadResult:
    """Outcome of one download job."""

    url: str
    file_path: str = ""
    size: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    duration: float = 0.0
    error: Optional[BaseException] = None
    panicked: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: float = -1
    http_only: bool = False
    secure: bool = False


@dataclass
class SessionData:
    """Authenticated browser state loaded from a session store."""

    name: str
    cookies: List[Cookie] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class Scraper(Protocol):
    """Anything that turns ``RequestOptions`` into ``PageData``."""

    name: str

    async def fetch(self, opts: RequestOptions) -> PageData: ...


class Cache(Protocol):
    def get(self, key: str) -> Tuple[Optional[PageData], bool]: ...

    def set(self, key: str, data: PageData, ttl: float = 0) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def close(self) -> None: ...


class TokenReservation(Protocol):
    """A token held for later use; ``delay()`` is infinite when ``ok`` is False."""

    ok: bool

    def delay(self, now: Optional[float] = None) -> float: ...

    def cancel(self) -> None: ...


@runtime_checkable
class RateLimiter(Protocol):
    async def wait(self, url: str, *, timeout: Optional[float] = None, cancel_event: Any = None) -> None: ...

    def allow(self, url: str) -> bool: ...

    def reserve(self, url: str) -> TokenReservation: ...


class SessionStore(Protocol):
    def load_session(self, name: str) -> SessionData: ...
