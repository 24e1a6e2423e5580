"""
HybridCrawl - Hybrid static/headless-browser web fetcher.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import Application
from .errors import CrawlError, ErrorCode
from .protocols import PageData, RequestOptions, ScrapeMode, ScrapeResult

__all__ = [
    "__version__",
    "Application",
    "Config",
    "CrawlError",
    "ErrorCode",
    "PageData",
    "RequestOptions",
    "ScrapeMode",
    "ScrapeResult",
]
