"""
Unit tests for mode routing and auto-escalation in the hybrid fetcher.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from aioresponses import aioresponses

from hybridcrawl.cache import cache_key
from hybridcrawl.engine.dynamic_fetcher import DynamicFetcher
from hybridcrawl.engine.extract import parse_html
from hybridcrawl.engine.hybrid_fetcher import HybridFetcher
from hybridcrawl.engine.sandbox import ScriptSandbox
from hybridcrawl.engine.static_fetcher import StaticFetcher
from hybridcrawl.errors import BrowserError, CrawlError
from hybridcrawl.protocols import PageData, RequestOptions, ScrapeMode

URL = "https://example.com/page"


def static_returning(html):
    """StaticFetcher double that serves ``html`` as the fetched document."""
    page = PageData(url=URL, status_code=200, title="Static", html=html, metadata={"description": "static"})
    static = MagicMock(spec=StaticFetcher)
    static.fetch = AsyncMock(return_value=page)
    static.fetch_document = AsyncMock(side_effect=lambda opts: (page, parse_html(html)))
    return static, page


def dynamic_returning(page=None, error=None):
    dynamic = MagicMock(spec=DynamicFetcher)
    dynamic.fetch = AsyncMock(return_value=page, side_effect=error)
    return dynamic


@pytest.fixture
def sandbox():
    fake = MagicMock(spec=ScriptSandbox)
    fake.run = AsyncMock(return_value={"js:pageConfig": '{"page":2}'})
    return fake


@pytest.fixture
def rendered_page():
    return PageData(url=URL, status_code=200, title="Rendered", strategy="dynamic")


@pytest.mark.unit
class TestModeRouting:
    @pytest.mark.asyncio
    async def test_static_mode_never_renders(self, sample_html, rendered_page):
        static, page = static_returning(sample_html)
        dynamic = dynamic_returning(rendered_page)

        result = await HybridFetcher(static, dynamic).fetch(RequestOptions(url=URL, mode=ScrapeMode.STATIC))

        assert result is page
        dynamic.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_spa_mode_goes_straight_to_browser(self, sample_html, rendered_page):
        static, _ = static_returning(sample_html)
        dynamic = dynamic_returning(rendered_page)

        result = await HybridFetcher(static, dynamic).fetch(RequestOptions(url=URL, mode=ScrapeMode.SPA))

        assert result is rendered_page
        static.fetch.assert_not_awaited()
        static.fetch_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_spa_mode_without_browser_fails(self, sample_html):
        static, _ = static_returning(sample_html)

        with pytest.raises(CrawlError):
            await HybridFetcher(static).fetch(RequestOptions(url=URL, mode=ScrapeMode.SPA))


@pytest.mark.unit
class TestAutoMode:
    @pytest.mark.asyncio
    async def test_static_page_returned_as_is(self, sample_html, sandbox, rendered_page):
        static, page = static_returning(sample_html)
        dynamic = dynamic_returning(rendered_page)

        result = await HybridFetcher(static, dynamic, sandbox).fetch(RequestOptions(url=URL))

        assert result is page
        dynamic.fetch.assert_not_awaited()
        sandbox.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hybrid_page_runs_inline_scripts(self, hybrid_html, sandbox, rendered_page):
        static, _ = static_returning(hybrid_html)
        dynamic = dynamic_returning(rendered_page)

        result = await HybridFetcher(static, dynamic, sandbox).fetch(RequestOptions(url=URL))

        assert result.strategy == "hybrid"
        assert result.metadata == {"description": "static", "js:pageConfig": '{"page":2}'}
        sandbox.run.assert_awaited_once_with(URL, ['window.pageConfig = {"page": 2};'])
        dynamic.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_spa_shell_escalates_to_browser(self, spa_html, sandbox, rendered_page):
        static, _ = static_returning(spa_html)
        dynamic = dynamic_returning(rendered_page)
        opts = RequestOptions(url=URL)

        result = await HybridFetcher(static, dynamic, sandbox).fetch(opts)

        assert result is rendered_page
        dynamic.fetch.assert_awaited_once_with(opts)

    @pytest.mark.asyncio
    async def test_browser_failure_falls_back_to_static(self, spa_html, sandbox):
        static, page = static_returning(spa_html)
        dynamic = dynamic_returning(error=BrowserError("crashed"))

        result = await HybridFetcher(static, dynamic, sandbox).fetch(RequestOptions(url=URL))

        assert result is page

    @pytest.mark.asyncio
    async def test_no_browser_configured_keeps_static(self, spa_html, sandbox):
        static, page = static_returning(spa_html)

        result = await HybridFetcher(static, None, sandbox).fetch(RequestOptions(url=URL))

        assert result is page

    @pytest.mark.asyncio
    async def test_static_errors_propagate(self, sandbox):
        static = MagicMock(spec=StaticFetcher)
        static.fetch_document = AsyncMock(side_effect=CrawlError("down"))

        with pytest.raises(CrawlError):
            await HybridFetcher(static, None, sandbox).fetch(RequestOptions(url=URL))


@pytest.mark.unit
class TestAutoModeCache:
    @pytest.mark.asyncio
    async def test_outcome_cached_under_own_namespace(self, hybrid_html, sandbox, memory_cache):
        static, _ = static_returning(hybrid_html)
        fetcher = HybridFetcher(static, None, sandbox, cache=memory_cache)

        first = await fetcher.fetch(RequestOptions(url=URL))
        second = await fetcher.fetch(RequestOptions(url=URL))

        assert second is first
        assert second.strategy == "hybrid"
        static.fetch_document.assert_awaited_once()
        sandbox.run.assert_awaited_once()
        assert memory_cache.get(cache_key(URL, "", "auto"))[1] is True
        assert memory_cache.get(cache_key(URL))[1] is False

    @pytest.mark.asyncio
    async def test_browser_fallback_is_not_cached(self, spa_html, sandbox, memory_cache, rendered_page):
        static, page = static_returning(spa_html)
        dynamic = dynamic_returning(error=BrowserError("crashed"))
        fetcher = HybridFetcher(static, dynamic, sandbox, cache=memory_cache)

        assert await fetcher.fetch(RequestOptions(url=URL)) is page
        dynamic.fetch.side_effect = None
        dynamic.fetch.return_value = rendered_page

        assert await fetcher.fetch(RequestOptions(url=URL)) is rendered_page
        assert dynamic.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_field_requests_bypass_cache(self, hybrid_html, sandbox, memory_cache):
        static, _ = static_returning(hybrid_html)
        fetcher = HybridFetcher(static, None, sandbox, cache=memory_cache)
        opts = RequestOptions(url=URL, fields={"list": ".list"})

        await fetcher.fetch(opts)
        await fetcher.fetch(opts)

        assert static.fetch_document.await_count == 2
        assert len(memory_cache) == 0

    @pytest.mark.asyncio
    async def test_repeated_selector_request_keeps_strategy(self, hybrid_html, memory_cache, fast_retry):
        opts = RequestOptions(url=URL, selector=".list")

        with aioresponses() as mock_http:
            mock_http.get(URL, status=200, body=hybrid_html, repeat=True)
            async with StaticFetcher(memory_cache, None, retry_config=fast_retry) as static:
                fetcher = HybridFetcher(static, None, ScriptSandbox(), cache=memory_cache)
                first = await fetcher.fetch(opts)
                second = await fetcher.fetch(opts)

        assert first.strategy == second.strategy == "hybrid"
        assert first.html == second.html == '<div class="list">Items</div>'
        assert second.metadata["js:pageConfig"] == '{"page":2}'
        assert second.metadata == first.metadata
