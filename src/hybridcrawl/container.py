"""
Application container wiring the engine together from configuration.

One ``Application`` is built per process and passed explicitly to whatever
drives it; nothing here is module-level state. The browser pool is expensive,
so it is created on first use and published to the dynamic fetcher in a single
assignment.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from hybridcrawl.cache import MemoryCache
from hybridcrawl.config import Config, load_config
from hybridcrawl.crawler import DomainRateLimiter, ProxyPool, RetryConfig
from hybridcrawl.downloader import DownloadPool, Downloader
from hybridcrawl.engine import BatchScraper, BrowserPool, DynamicFetcher, HybridFetcher, StaticFetcher
from hybridcrawl.observability import configure_logging, start_metrics_server
from hybridcrawl.protocols import ScrapeMode, Scraper, SessionStore
from hybridcrawl.sessions import InMemorySessionStore


class Application:
    """
    Owns the cache, rate limiters, proxy pool, session store and fetchers
    built from one ``Config``, and tears them down together.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        session_store: Optional[SessionStore] = None,
        browser_pool_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config or Config()
        self.app_id = str(uuid4())
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.is_running = False
        self._closed = False

        cfg = self.config
        self.cache: Optional[MemoryCache] = None
        if cfg.cache.enabled:
            self.cache = MemoryCache(cfg.cache.max_size_bytes, sweep_interval=cfg.cache.sweep_interval)

        self.static_limiter = DomainRateLimiter(cfg.rate_limit.static_rps, cfg.rate_limit.static_burst)
        self.dynamic_limiter = DomainRateLimiter(cfg.rate_limit.dynamic_rps, cfg.rate_limit.dynamic_burst)
        self.download_limiter = DomainRateLimiter(cfg.rate_limit.download_rps, cfg.rate_limit.download_burst)

        self.proxy_pool: Optional[ProxyPool] = None
        proxies = cfg.crawler.proxies or ([cfg.crawler.proxy] if cfg.crawler.proxy else [])
        if proxies:
            self.proxy_pool = ProxyPool(proxies, cooldown_seconds=cfg.crawler.proxy_cooldown_seconds)

        self.session_store: SessionStore = session_store or InMemorySessionStore()
        self.retry_config = RetryConfig(
            max_attempts=cfg.retry.max_attempts,
            initial_backoff=cfg.retry.initial_backoff,
            max_backoff=cfg.retry.max_backoff,
            multiplier=cfg.retry.multiplier,
            retryable_status_codes=frozenset(cfg.retry.retryable_status_codes),
        )

        self.static = StaticFetcher(
            self.cache,
            self.static_limiter,
            session_store=self.session_store,
            proxy_pool=self.proxy_pool,
            retry_config=self.retry_config,
            user_agent=cfg.crawler.user_agent,
            timeout=cfg.crawler.timeout,
            cache_ttl=cfg.cache.ttl_seconds,
            max_connections=cfg.crawler.max_connections,
            max_connections_per_host=cfg.crawler.max_connections_per_host,
        )
        self.dynamic = DynamicFetcher(
            self.cache,
            self.dynamic_limiter,
            session_store=self.session_store,
            user_agent=cfg.crawler.user_agent,
            timeout=cfg.crawler.timeout,
            acquire_timeout=cfg.browser.acquire_timeout,
            cache_ttl=cfg.cache.ttl_seconds,
            headless=cfg.browser.headless,
            chrome_path=cfg.browser.chrome_path,
        )
        self.hybrid = HybridFetcher(self.static, self.dynamic, cache=self.cache, cache_ttl=cfg.cache.ttl_seconds)

        self._browser_pool_factory = browser_pool_factory or BrowserPool.create
        self._browser_pool_lock = asyncio.Lock()
        self._download_pools: List[DownloadPool] = []

    @classmethod
    def from_file(cls, path: Optional[Path] = None, **kwargs: Any) -> Application:
        return cls(load_config(path), **kwargs)

    async def initialize(self) -> None:
        """Configure logging and metrics, and open the HTTP session."""
        configure_logging(self.config.monitoring)
        start_metrics_server(self.config.monitoring)
        await self.static.initialize()
        self.is_running = True
        self.logger.info("Application initialized", app_id=self.app_id)

    @property
    def browser_pool(self) -> Optional[BrowserPool]:
        return self.dynamic.browser_pool

    async def ensure_browser_pool(self) -> BrowserPool:
        """Create the shared browser pool once; concurrent callers share it."""
        pool = self.dynamic.browser_pool
        if pool is not None:
            return pool
        async with self._browser_pool_lock:
            pool = self.dynamic.browser_pool
            if pool is not None:
                return pool
            if self._closed:
                raise RuntimeError("application is closed")
            cfg = self.config
            self.logger.info("Starting browser pool", size=cfg.browser.pool_size)
            pool = await self._browser_pool_factory(
                cfg.browser.pool_size,
                headless=cfg.browser.headless,
                user_agent=cfg.crawler.user_agent,
                proxy=cfg.crawler.proxy,
                chrome_path=cfg.browser.chrome_path,
            )
            self.dynamic.set_browser_pool(pool)
            return pool

    async def scraper_for(self, mode: ScrapeMode) -> Scraper:
        """Fetcher for ``mode``; SPA mode brings the browser pool up first."""
        if mode is ScrapeMode.STATIC:
            return self.static
        if mode is ScrapeMode.SPA:
            await self.ensure_browser_pool()
            return self.dynamic
        return self.hybrid

    def batch_scraper(self, scraper: Optional[Scraper] = None, concurrency: Optional[int] = None) -> BatchScraper:
        cfg = self.config.batch
        return BatchScraper(
            scraper or self.hybrid,
            concurrency if concurrency is not None else cfg.concurrency,
            per_domain_concurrency=cfg.per_domain_concurrency,
        )

    def download_pool(self, concurrency: Optional[int] = None) -> DownloadPool:
        cfg = self.config
        downloader = Downloader(timeout=cfg.crawler.timeout, user_agent=cfg.crawler.user_agent)
        pool = DownloadPool(
            concurrency if concurrency is not None else cfg.batch.download_concurrency,
            rate_limiter=self.download_limiter,
            downloader=downloader,
            output_dir=cfg.batch.download_dir,
        )
        self._download_pools.append(pool)
        return pool

    async def close(self) -> None:
        """Close the browser pool, download sessions, HTTP session and cache. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.logger.info("Shutting down application", app_id=self.app_id)

        async with self._browser_pool_lock:
            pool = self.dynamic.browser_pool
            self.dynamic.set_browser_pool(None)
        if pool is not None:
            await pool.close()

        for download_pool in self._download_pools:
            await download_pool.close()
        self._download_pools.clear()

        await self.static.close()
        if self.cache is not None:
            self.cache.close()

        self.is_running = False
        self.logger.info("Application shutdown complete")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[Application]:
        try:
            await self.initialize()
            yield self
        finally:
            await self.close()

    async def __aenter__(self) -> Application:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_health_status(self) -> Dict[str, Any]:
        pool = self.dynamic.browser_pool
        return {
            "app_id": self.app_id,
            "is_running": self.is_running,
            "browser_pool_size": pool.size if pool is not None else 0,
            "browser_contexts_available": pool.available() if pool is not None else 0,
            "cache": self.cache.stats() if self.cache is not None else None,
            "proxies_healthy": self.proxy_pool.healthy_count() if self.proxy_pool is not None else 0,
        }
