"""Utility helpers for HybridCrawl."""

from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlparse

from .filenames import is_safe_filename, safe_filename_from_url

__all__ = ["extract_host", "is_safe_filename", "safe_filename_from_url", "sleep_or_cancel", "validate_url"]


def extract_host(url: str) -> str:
    """Return the lowercased host of ``url`` or an empty string if it has none."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def validate_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


async def sleep_or_cancel(delay: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for ``delay`` seconds unless ``cancel_event`` fires first.

    Returns True if the full delay elapsed, False if the event was set.
    Task cancellation propagates as ``asyncio.CancelledError``.
    """
    if delay <= 0:
        return not (cancel_event is not None and cancel_event.is_set())
    if cancel_event is None:
        await asyncio.sleep(delay)
        return True
    if cancel_event.is_set():
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False
