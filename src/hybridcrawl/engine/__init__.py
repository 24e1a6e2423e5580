"""Fetch engine: static, browser and hybrid fetchers plus batch execution."""

from .batch import BatchScraper, optimal_concurrency, summarize_failures
from .browser_pool import BrowserContext, BrowserPool
from .dynamic_fetcher import DynamicFetcher
from .hybrid_fetcher import HybridFetcher
from .sandbox import ScriptSandbox
from .static_fetcher import StaticFetcher
from .strategy import Strategy, detect_framework, determine_strategy, needs_javascript

__all__ = [
    "BatchScraper",
    "BrowserContext",
    "BrowserPool",
    "DynamicFetcher",
    "HybridFetcher",
    "ScriptSandbox",
    "StaticFetcher",
    "Strategy",
    "detect_framework",
    "determine_strategy",
    "needs_javascript",
    "optimal_concurrency",
    "summarize_failures",
]
