"""
Tests for the application container: wiring, lazy browser pool and shutdown.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from hybridcrawl.config import BatchConfig, CacheConfig, Config, CrawlerConfig
from hybridcrawl.container import Application
from hybridcrawl.engine import BatchScraper, DynamicFetcher, HybridFetcher, StaticFetcher
from hybridcrawl.protocols import ScrapeMode


class PoolFactory:
    """Stands in for ``BrowserPool.create``; counts how often a pool is built."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.calls = []
        self.pool = MagicMock()
        self.pool.size = 2
        self.pool.available.return_value = 2
        self.pool.close = AsyncMock()

    async def __call__(self, size, **kwargs):
        self.calls.append((size, kwargs))
        await asyncio.sleep(self.delay)
        return self.pool


@pytest.fixture
def pool_factory():
    return PoolFactory()


@pytest_asyncio.fixture
async def app(pool_factory):
    application = Application(Config(cache=CacheConfig(enabled=False)), browser_pool_factory=pool_factory)
    yield application
    await application.close()


@pytest.mark.unit
class TestApplicationWiring:
    """Components built from configuration."""

    @pytest.mark.asyncio
    async def test_fetchers_share_dependencies(self, app):
        assert isinstance(app.static, StaticFetcher)
        assert isinstance(app.dynamic, DynamicFetcher)
        assert isinstance(app.hybrid, HybridFetcher)
        assert app.hybrid.static is app.static
        assert app.hybrid.dynamic is app.dynamic
        assert app.static.session_store is app.dynamic.session_store
        assert app.static.rate_limiter is app.static_limiter
        assert app.cache is None

    @pytest.mark.asyncio
    async def test_cache_enabled_by_default(self):
        application = Application()
        try:
            assert application.cache is not None
            assert application.static.cache is application.cache
            assert application.dynamic.cache is application.cache
            assert application.hybrid.cache is application.cache
        finally:
            await application.close()

    @pytest.mark.asyncio
    async def test_single_proxy_feeds_proxy_pool(self):
        application = Application(
            Config(cache=CacheConfig(enabled=False), crawler=CrawlerConfig(proxy="http://proxy.local:3128"))
        )
        try:
            assert application.proxy_pool is not None
            assert application.proxy_pool.get_next() == "http://proxy.local:3128"
        finally:
            await application.close()

    @pytest.mark.asyncio
    async def test_retry_settings_applied(self, app):
        assert app.static.retry_config.max_attempts == app.config.retry.max_attempts
        assert 503 in app.static.retry_config.retryable_status_codes

    @pytest.mark.asyncio
    async def test_batch_scraper_uses_batch_config(self, pool_factory):
        config = Config(cache=CacheConfig(enabled=False), batch=BatchConfig(concurrency=4, per_domain_concurrency=2))
        application = Application(config, browser_pool_factory=pool_factory)
        try:
            batch = application.batch_scraper()

            assert isinstance(batch, BatchScraper)
            assert batch.scraper is application.hybrid
            assert batch.concurrency == 4
            assert batch.per_domain_concurrency == 2
            assert application.batch_scraper(application.static, concurrency=9).concurrency == 9
        finally:
            await application.close()

    @pytest.mark.asyncio
    async def test_download_pool_uses_configured_dir(self, tmp_path):
        config = Config(cache=CacheConfig(enabled=False), batch=BatchConfig(download_dir=tmp_path / "media"))
        application = Application(config)
        try:
            assert application.download_pool().output_dir == tmp_path / "media"
        finally:
            await application.close()


@pytest.mark.unit
class TestBrowserPoolLifecycle:
    """The browser pool is created lazily and exactly once."""

    @pytest.mark.asyncio
    async def test_static_and_auto_do_not_start_browser(self, app, pool_factory):
        assert await app.scraper_for(ScrapeMode.STATIC) is app.static
        assert await app.scraper_for(ScrapeMode.AUTO) is app.hybrid
        assert pool_factory.calls == []
        assert app.browser_pool is None

    @pytest.mark.asyncio
    async def test_spa_mode_starts_pool(self, app, pool_factory):
        scraper = await app.scraper_for(ScrapeMode.SPA)

        assert scraper is app.dynamic
        assert app.dynamic.browser_pool is pool_factory.pool
        size, kwargs = pool_factory.calls[0]
        assert size == app.config.browser.pool_size
        assert kwargs["headless"] is True

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_pool(self, app, pool_factory):
        pools = await asyncio.gather(*(app.ensure_browser_pool() for _ in range(20)))

        assert len(pool_factory.calls) == 1
        assert all(pool is pool_factory.pool for pool in pools)

    @pytest.mark.asyncio
    async def test_close_shuts_pool_once(self, app, pool_factory):
        await app.ensure_browser_pool()

        await app.close()
        await app.close()

        pool_factory.pool.close.assert_awaited_once()
        assert app.browser_pool is None

    @pytest.mark.asyncio
    async def test_no_pool_after_close(self, app):
        await app.close()

        with pytest.raises(RuntimeError):
            await app.ensure_browser_pool()


@pytest.mark.unit
class TestApplicationLifecycle:
    """Initialization, health and teardown."""

    @pytest.mark.asyncio
    async def test_lifecycle_opens_and_closes(self, pool_factory):
        application = Application(Config(cache=CacheConfig(enabled=False)), browser_pool_factory=pool_factory)

        with patch("hybridcrawl.container.configure_logging") as configure:
            async with application.lifecycle() as running:
                assert running.is_running is True
                configure.assert_called_once_with(application.config.monitoring)
                download_pool = running.download_pool(concurrency=3)
                assert download_pool.concurrency == 3
                assert download_pool.rate_limiter is running.download_limiter

        assert application.is_running is False

    @pytest.mark.asyncio
    async def test_health_status(self, app, pool_factory):
        before = app.get_health_status()
        await app.ensure_browser_pool()
        after = app.get_health_status()

        assert before["browser_pool_size"] == 0
        assert after["browser_pool_size"] == 2
        assert after["browser_contexts_available"] == 2
        assert after["app_id"] == app.app_id
        assert after["cache"] is None
