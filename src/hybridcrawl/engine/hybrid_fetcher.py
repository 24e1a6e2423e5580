"""
Mode-aware fetcher that picks the cheapest path able to render a page.

Auto mode always decides from a freshly fetched full document and caches the
finished outcome under its own namespace, so a repeated request gets the same
strategy and ``js:`` metadata whatever selector it carries.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Optional

import structlog
from bs4 import BeautifulSoup

from hybridcrawl.cache import cache_key
from hybridcrawl.errors import CrawlError
from hybridcrawl.observability import histogram, increment
from hybridcrawl.protocols import Cache, PageData, RequestOptions, ScrapeMode

from .dynamic_fetcher import DynamicFetcher
from .extract import count_scripts, inline_scripts
from .sandbox import ScriptSandbox
from .static_fetcher import StaticFetcher, is_cacheable
from .strategy import Strategy, detect_framework, determine_strategy

logger = structlog.get_logger(__name__)


class HybridFetcher:
    """
    ``static`` mode uses the HTTP path, ``spa`` the browser path, and ``auto``
    fetches statically first and escalates only when the page looks like it
    needs JavaScript.
    """

    name = "HybridFetcher"
    cache_namespace = "auto"

    def __init__(
        self,
        static: StaticFetcher,
        dynamic: Optional[DynamicFetcher] = None,
        sandbox: Optional[ScriptSandbox] = None,
        *,
        cache: Optional[Cache] = None,
        cache_ttl: float = 300.0,
    ) -> None:
        self.static = static
        self.dynamic = dynamic
        self.sandbox = sandbox or ScriptSandbox()
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def fetch(self, opts: RequestOptions) -> PageData:
        if opts.mode is ScrapeMode.STATIC:
            return await self.static.fetch(opts)
        if opts.mode is ScrapeMode.SPA:
            if self.dynamic is None:
                raise CrawlError("no dynamic fetcher configured for spa mode")
            return await self.dynamic.fetch(opts)
        return await self._fetch_auto(opts)

    async def _fetch_auto(self, opts: RequestOptions) -> PageData:
        use_cache = self.cache is not None and is_cacheable(opts)
        key = cache_key(opts.url, opts.selector, self.cache_namespace)
        if use_cache:
            cached, found = self.cache.get(key)  # type: ignore[union-attr]
            if found and cached is not None:
                return cached

        start = time.monotonic()
        page, doc = await self.static.fetch_document(opts)

        script_count = count_scripts(doc)
        html = str(doc)
        strategy = determine_strategy(html, script_count)
        increment("strategy_decisions", labels={"strategy": strategy.value})
        logger.debug(
            "Strategy selected",
            url=opts.url,
            strategy=str(strategy),
            scripts=script_count,
            framework=detect_framework(html),
        )

        if strategy is Strategy.STATIC:
            result = page
        elif strategy is Strategy.DYNAMIC:
            result = await self._escalate(opts, page)
            if result is page:
                # Fallbacks stay uncached
                return result
        else:
            result = await self._run_inline_scripts(page, doc)
            histogram("fetch_latency_seconds", time.monotonic() - start, labels={"strategy": "hybrid"})

        if use_cache and 0 < result.status_code < 400:
            self.cache.set(key, result, self.cache_ttl)  # type: ignore[union-attr]
        return result

    async def _escalate(self, opts: RequestOptions, static_page: PageData) -> PageData:
        if self.dynamic is None:
            logger.warning("Page needs JavaScript but no browser is configured", url=opts.url)
            return static_page
        try:
            return await self.dynamic.fetch(opts)
        except CrawlError as e:
            logger.warning("Dynamic fetch failed, using static result", url=opts.url, error=str(e))
            return static_page

    async def _run_inline_scripts(self, page: PageData, doc: BeautifulSoup) -> PageData:
        scripts = inline_scripts(doc)
        js_metadata = await self.sandbox.run(page.url, scripts)
        metadata = {**page.metadata, **js_metadata}
        return replace(page, metadata=metadata, strategy="hybrid")
