"""
Headless-browser fetcher.

Renders the page in a pooled Playwright context (or a one-off browser when no
pool is attached), waits for it to settle, and extracts the same ``PageData``
shape as the static path from the live DOM.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from hybridcrawl.cache import cache_key
from hybridcrawl.config.config import DEFAULT_USER_AGENT
from hybridcrawl.errors import BrowserError, CrawlError, FetchTimeoutError
from hybridcrawl.observability import bind_request_id, histogram, increment
from hybridcrawl.protocols import Cache, PageData, RateLimiter, RequestOptions, SessionData, SessionStore
from hybridcrawl.sessions import load_session_or_none

from .browser_pool import VIEWPORT, BrowserPool
from .chrome import find_chrome, launch_args
from .extract import split_field_selector
from .static_fetcher import is_cacheable, validate_request

logger = structlog.get_logger(__name__)

SETTLE_SECONDS = 0.3

# Runs in the page; mirrors extract.extract_content/extract_page/extract_fields
EXTRACT_JS = """
({selector, fields}) => {
  const attrs = (sel, name) =>
    Array.from(document.querySelectorAll(sel)).map((el) => el.getAttribute(name)).filter((v) => v);
  const out = {
    content: "",
    html: "",
    matched: true,
    links: attrs("a[href]", "href"),
    images: attrs("img[src]", "src"),
    scripts: attrs("script[src]", "src"),
    metadata: {},
    fields: {},
  };
  if (selector && selector !== "body") {
    const nodes = Array.from(document.querySelectorAll(selector));
    out.matched = nodes.length > 0;
    out.content = nodes.map((n) => (n.textContent || "").trim()).join("\\n").trim();
    out.html = nodes.map((n) => n.outerHTML).join("\\n");
  } else {
    out.content = document.body ? (document.body.textContent || "").trim() : "";
  }
  for (const meta of document.querySelectorAll("meta")) {
    const content = meta.getAttribute("content") || "";
    const name = meta.getAttribute("name");
    if (name) out.metadata[name] = content;
    const prop = meta.getAttribute("property");
    if (prop) out.metadata[prop] = content;
  }
  for (const [key, target] of Object.entries(fields)) {
    let el = null;
    try {
      el = target.selector ? document.querySelector(target.selector) : null;
    } catch (e) {
      el = null;
    }
    if (!el) {
      out.fields[key] = "";
    } else if (target.attr) {
      out.fields[key] = el.getAttribute(target.attr) || "";
    } else {
      out.fields[key] = (el.textContent || "").trim();
    }
  }
  return out;
}
"""


def session_cookies(session: SessionData, url: str) -> List[Dict[str, Any]]:
    """Session cookies in the shape ``BrowserContext.add_cookies`` accepts."""
    cookies: List[Dict[str, Any]] = []
    for c in session.cookies:
        cookie: Dict[str, Any] = {
            "name": c.name,
            "value": c.value,
            "httpOnly": c.http_only,
            "secure": c.secure,
            "expires": c.expires,
        }
        if c.domain:
            cookie["domain"] = c.domain
            cookie["path"] = c.path or "/"
        else:
            cookie["url"] = url
        cookies.append(cookie)
    return cookies


class DynamicFetcher:
    """Browser-backed implementation of the ``Scraper`` protocol."""

    name = "DynamicFetcher"
    cache_namespace = "spa"

    def __init__(
        self,
        cache: Optional[Cache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        browser_pool: Optional[BrowserPool] = None,
        *,
        session_store: Optional[SessionStore] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        acquire_timeout: Optional[float] = None,
        cache_ttl: float = 300.0,
        headless: bool = True,
        chrome_path: Optional[str] = None,
    ) -> None:
        self.cache = cache
        self.rate_limiter = rate_limiter
        self._browser_pool = browser_pool
        self.session_store = session_store
        self.user_agent = user_agent
        self.timeout = timeout
        self.acquire_timeout = acquire_timeout
        self.cache_ttl = cache_ttl
        self.headless = headless
        self.chrome_path = chrome_path

    @property
    def browser_pool(self) -> Optional[BrowserPool]:
        return self._browser_pool

    def set_browser_pool(self, pool: Optional[BrowserPool]) -> None:
        self._browser_pool = pool

    async def fetch(self, opts: RequestOptions) -> PageData:
        validate_request(opts)

        use_cache = self.cache is not None and is_cacheable(opts)
        key = cache_key(opts.url, opts.selector, self.cache_namespace)
        if use_cache:
            cached, found = self.cache.get(key)  # type: ignore[union-attr]
            if found and cached is not None:
                return cached

        with bind_request_id(url=opts.url, fetcher=self.name):
            start = time.monotonic()
            try:
                page = await self._fetch(opts, start)
            except CrawlError as e:
                increment("fetch_errors", labels={"fetcher": self.name, "code": e.code.value})
                raise
            histogram("fetch_latency_seconds", time.monotonic() - start, labels={"strategy": "dynamic"})

        if use_cache and 0 < page.status_code < 400:
            self.cache.set(key, page, self.cache_ttl)  # type: ignore[union-attr]
        return page

    async def _fetch(self, opts: RequestOptions, start: float) -> PageData:
        logger.debug("Starting fetch", url=opts.url)
        timeout = opts.timeout if opts.timeout > 0 else self.timeout

        if self.rate_limiter is not None:
            await self.rate_limiter.wait(opts.url)

        session_data = load_session_or_none(self.session_store, opts.session_name)

        pool = self._browser_pool
        if pool is not None:
            slot = await pool.acquire(self.acquire_timeout or timeout)
            logger.debug("Acquired browser from pool", elapsed_ms=int((time.monotonic() - start) * 1000))
            try:
                return await self._render(slot.context, slot.page, opts, session_data, timeout, start)
            finally:
                await pool.release(slot)

        logger.debug("No browser pool attached, launching a one-off browser")
        async with async_playwright() as playwright:
            launch_kwargs: Dict[str, Any] = {"headless": self.headless, "args": launch_args()}
            executable = self.chrome_path or find_chrome()
            if executable:
                launch_kwargs["executable_path"] = executable
            if opts.proxy:
                launch_kwargs["proxy"] = {"server": opts.proxy}
            try:
                browser = await playwright.chromium.launch(**launch_kwargs)
            except PlaywrightError as e:
                raise BrowserError("failed to launch browser") from e
            try:
                context = await browser.new_context(user_agent=self.user_agent, viewport=VIEWPORT)
                page = await context.new_page()
                return await self._render(context, page, opts, session_data, timeout, start)
            finally:
                await browser.close()

    async def _render(
        self,
        context: Any,
        page: Any,
        opts: RequestOptions,
        session_data: Optional[SessionData],
        timeout: float,
        start: float,
    ) -> PageData:
        listened: Dict[str, Any] = {}

        def on_response(response: Any) -> None:
            if "status" not in listened and response.url == opts.url:
                listened["status"] = response.status
                listened["headers"] = dict(response.headers)

        extra_headers: Dict[str, str] = {}
        if session_data is not None:
            extra_headers.update(session_data.headers)
        extra_headers.update(opts.headers)

        page.on("response", on_response)
        try:
            async with asyncio.timeout(timeout + opts.wait_seconds + SETTLE_SECONDS):
                if session_data is not None and session_data.cookies:
                    await context.add_cookies(session_cookies(session_data, opts.url))
                if extra_headers:
                    await page.set_extra_http_headers(extra_headers)

                response = await page.goto(opts.url, timeout=timeout * 1000, wait_until="load")
                await asyncio.sleep(SETTLE_SECONDS)
                if opts.wait_seconds > 0:
                    logger.debug("Waiting after navigation", wait_seconds=opts.wait_seconds)
                    await asyncio.sleep(opts.wait_seconds)

                title = await page.title()
                full_html = await page.content()
                extracted = await page.evaluate(EXTRACT_JS, {"selector": opts.selector, "fields": self._field_targets(opts)})
        except (PlaywrightTimeoutError, TimeoutError) as e:
            raise FetchTimeoutError(f"page render timed out after {timeout}s", details={"url": opts.url}) from e
        except PlaywrightError as e:
            raise BrowserError("browser execution failed", details={"url": opts.url}) from e
        finally:
            page.remove_listener("response", on_response)
            await self._reset_state(context, page, session_data, extra_headers)

        status, headers = self._status_and_headers(response, listened)

        if not opts.uses_default_selector and not extracted.get("matched", True):
            logger.warning("Selector not found", selector=opts.selector, url=opts.url)

        html = full_html if opts.uses_default_selector else extracted.get("html", "")
        elapsed_ms = int((time.monotonic() - start) * 1000)
        data = PageData(
            url=opts.url,
            status_code=status,
            title=title,
            content=extracted.get("content", ""),
            html=html,
            headers=headers,
            metadata=dict(extracted.get("metadata") or {}),
            links=list(extracted.get("links") or []),
            images=list(extracted.get("images") or []),
            scripts=list(extracted.get("scripts") or []),
            fields=dict(extracted.get("fields") or {}),
            response_time_ms=elapsed_ms,
            strategy="dynamic",
        )
        logger.info(
            "Fetch completed",
            url=opts.url,
            status=status,
            response_time_ms=elapsed_ms,
            links=len(data.links),
            images=len(data.images),
        )
        return data

    @staticmethod
    def _field_targets(opts: RequestOptions) -> Dict[str, Dict[str, str]]:
        targets: Dict[str, Dict[str, str]] = {}
        for name, expr in opts.fields.items():
            selector, attr = split_field_selector(expr)
            targets[name] = {"selector": selector, "attr": attr}
        return targets

    @staticmethod
    def _status_and_headers(response: Any, listened: Dict[str, Any]) -> Tuple[int, Dict[str, str]]:
        """Prefer the navigation's final response; the exact-URL listener is the fallback."""
        if response is not None:
            return int(response.status), dict(response.headers)
        return int(listened.get("status", 0)), dict(listened.get("headers", {}))

    @staticmethod
    async def _reset_state(
        context: Any, page: Any, session_data: Optional[SessionData], extra_headers: Dict[str, str]
    ) -> None:
        """Undo per-request cookies and headers so a pooled context carries nothing over."""
        try:
            if session_data is not None and session_data.cookies:
                await context.clear_cookies()
            if extra_headers:
                await page.set_extra_http_headers({})
        except PlaywrightError as e:
            logger.debug("Could not reset browser context state", error=str(e))
