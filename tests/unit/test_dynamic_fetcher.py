"""
Unit tests for the headless-browser fetcher over a fake browser pool.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from hybridcrawl.engine.browser_pool import BrowserPool
from hybridcrawl.engine.dynamic_fetcher import DynamicFetcher, session_cookies
from hybridcrawl.errors import BrowserError, BrowserPoolTimeoutError, FetchTimeoutError, ValidationError
from hybridcrawl.protocols import Cookie, PageData, RequestOptions, SessionData
from hybridcrawl.sessions import InMemorySessionStore
from tests.helpers.fakes import make_fake_page

PAGE_URL = "https://example.com/app"


@pytest_asyncio.fixture
async def pool(fake_playwright):
    async with BrowserPool(1, playwright_factory=fake_playwright) as p:
        yield p


@pytest.fixture
def page(pool, fake_playwright):
    return fake_playwright.contexts[0].new_page.return_value


@pytest.mark.unit
class TestDynamicFetch:
    @pytest.mark.asyncio
    async def test_renders_through_pool(self, pool, page):
        fetcher = DynamicFetcher(browser_pool=pool)

        data = await fetcher.fetch(RequestOptions(url=PAGE_URL))

        assert data.status_code == 200
        assert data.title == "Rendered"
        assert data.html == "<html><body>ok</body></html>"
        assert data.links == ["https://example.com/a"]
        assert data.metadata == {"description": "rendered"}
        assert data.strategy == "dynamic"
        assert pool.available() == 1
        page.goto.assert_any_await(PAGE_URL, timeout=30000.0, wait_until="load")

    @pytest.mark.asyncio
    async def test_selector_returns_matched_html_only(self, pool, page):
        page.evaluate.return_value = {**page.evaluate.return_value, "html": "<h1>Hi</h1>", "content": "Hi"}
        fetcher = DynamicFetcher(browser_pool=pool)

        data = await fetcher.fetch(RequestOptions(url=PAGE_URL, selector="h1", fields={"photo": "img@src"}))

        assert data.html == "<h1>Hi</h1>"
        assert data.content == "Hi"
        _, args = page.evaluate.await_args.args
        assert args == {"selector": "h1", "fields": {"photo": {"selector": "img", "attr": "src"}}}

    @pytest.mark.asyncio
    async def test_invalid_request_rejected_before_acquire(self, pool):
        fetcher = DynamicFetcher(browser_pool=pool)

        with pytest.raises(ValidationError):
            await fetcher.fetch(RequestOptions(url="javascript:alert(1)"))

        assert pool.available() == 1

    @pytest.mark.asyncio
    async def test_cached_page_skips_browser(self, pool, page, memory_cache):
        fetcher = DynamicFetcher(memory_cache, browser_pool=pool)

        first = await fetcher.fetch(RequestOptions(url=PAGE_URL))
        navigations = page.goto.await_count
        second = await fetcher.fetch(RequestOptions(url=PAGE_URL))

        assert second == first
        assert page.goto.await_count == navigations

    @pytest.mark.asyncio
    async def test_static_entry_for_same_url_is_not_served(self, pool, page, memory_cache):
        memory_cache.set(PAGE_URL, PageData(url=PAGE_URL, status_code=200, strategy="static"), 60)
        fetcher = DynamicFetcher(memory_cache, browser_pool=pool)

        data = await fetcher.fetch(RequestOptions(url=PAGE_URL))

        assert data.strategy == "dynamic"
        page.goto.assert_any_await(PAGE_URL, timeout=30000.0, wait_until="load")


@pytest.mark.unit
class TestDynamicErrors:
    @pytest.mark.asyncio
    async def test_navigation_timeout_mapped(self, pool, page):
        page.goto = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 30000ms exceeded"))
        fetcher = DynamicFetcher(browser_pool=pool)

        with pytest.raises(FetchTimeoutError):
            await fetcher.fetch(RequestOptions(url=PAGE_URL))

    @pytest.mark.asyncio
    async def test_browser_error_mapped(self, pool, page):
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        fetcher = DynamicFetcher(browser_pool=pool)

        with pytest.raises(BrowserError):
            await fetcher.fetch(RequestOptions(url=PAGE_URL))

    @pytest.mark.asyncio
    async def test_acquire_timeout_surfaces(self, pool):
        fetcher = DynamicFetcher(browser_pool=pool, acquire_timeout=0.05)
        held = await pool.acquire(timeout=1.0)
        try:
            with pytest.raises(BrowserPoolTimeoutError):
                await fetcher.fetch(RequestOptions(url=PAGE_URL))
        finally:
            await pool.release(held)


@pytest.mark.unit
class TestSessionState:
    @pytest.mark.asyncio
    async def test_session_applied_and_reset(self, pool, page, fake_playwright):
        store = InMemorySessionStore(
            [SessionData(name="acct", cookies=[Cookie("sid", "abc")], headers={"Authorization": "Bearer t"})]
        )
        fetcher = DynamicFetcher(browser_pool=pool, session_store=store)
        context = fake_playwright.contexts[0]

        await fetcher.fetch(RequestOptions(url=PAGE_URL, session_name="acct"))

        context.add_cookies.assert_awaited_once()
        context.clear_cookies.assert_awaited_once()
        assert page.set_extra_http_headers.await_args_list[0].args == ({"Authorization": "Bearer t"},)
        assert page.set_extra_http_headers.await_args_list[-1].args == ({},)

    def test_session_cookies_shape(self):
        session = SessionData(
            name="acct",
            cookies=[Cookie("host", "1"), Cookie("scoped", "2", domain=".example.com", path="/app", secure=True)],
        )

        host, scoped = session_cookies(session, PAGE_URL)

        assert host["url"] == PAGE_URL
        assert "domain" not in host
        assert scoped["domain"] == ".example.com"
        assert scoped["path"] == "/app"
        assert scoped["secure"] is True


@pytest.mark.unit
class TestStatusSelection:
    def test_navigation_response_preferred(self):
        response = make_fake_page().goto.return_value

        assert DynamicFetcher._status_and_headers(response, {"status": 301}) == (200, {"content-type": "text/html"})

    def test_listener_used_when_navigation_has_no_response(self):
        listened = {"status": 304, "headers": {"etag": "x"}}

        assert DynamicFetcher._status_and_headers(None, listened) == (304, {"etag": "x"})
        assert DynamicFetcher._status_and_headers(None, {}) == (0, {})
