"""
Plain HTTP fetcher.

One GET per fetch over a shared keep-alive ``aiohttp`` session, parsed with
BeautifulSoup. Retryable upstream statuses and network failures go through
``with_retry``; any other status is returned to the caller as page data.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiohttp
import structlog
from bs4 import BeautifulSoup

from hybridcrawl.cache import cache_key
from hybridcrawl.config.config import DEFAULT_USER_AGENT
from hybridcrawl.crawler.proxy_pool import ProxyPool
from hybridcrawl.crawler.retry import RetryConfig, with_retry
from hybridcrawl.errors import CrawlError, FetchTimeoutError, NetworkError, UpstreamStatusError, ValidationError
from hybridcrawl.observability import bind_request_id, histogram, increment
from hybridcrawl.protocols import Cache, PageData, RateLimiter, RequestOptions, SessionData, SessionStore
from hybridcrawl.sessions import load_session_or_none
from hybridcrawl.utils import validate_url

from .extract import extract_content, extract_fields, extract_page, parse_html, validate_selector

logger = structlog.get_logger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def validate_request(opts: RequestOptions) -> None:
    """Reject bad URLs and selectors before any I/O."""
    if not validate_url(opts.url):
        raise ValidationError(f"invalid URL: {opts.url!r}", details={"url": opts.url})
    validate_selector(opts.selector)


def is_cacheable(opts: RequestOptions) -> bool:
    """Session-bound and field-extraction requests are never served from cache."""
    return not opts.session_name and not opts.fields


class StaticFetcher:
    """HTTP-only implementation of the ``Scraper`` protocol."""

    name = "StaticFetcher"

    def __init__(
        self,
        cache: Optional[Cache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        session_store: Optional[SessionStore] = None,
        proxy_pool: Optional[ProxyPool] = None,
        retry_config: Optional[RetryConfig] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        cache_ttl: float = 300.0,
        max_connections: int = 100,
        max_connections_per_host: int = 10,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.session_store = session_store
        self.proxy_pool = proxy_pool
        self.retry_config = retry_config or RetryConfig()
        self.user_agent = user_agent
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.max_connections = max_connections
        self.max_connections_per_host = max_connections_per_host
        self._session = http_session
        self._owns_session = http_session is None
        self._session_lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self._ensure_session()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is not None and not self._session.closed:
            return self._session
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=self.max_connections_per_host,
                    ttl_dns_cache=300,
                    keepalive_timeout=90,
                )
                self._session = aiohttp.ClientSession(connector=connector)
                self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> StaticFetcher:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def fetch(self, opts: RequestOptions) -> PageData:
        page, _ = await self.fetch_with_document(opts)
        return page

    async def fetch_with_document(self, opts: RequestOptions) -> Tuple[PageData, Optional[BeautifulSoup]]:
        """
        Fetch ``opts.url`` and also return the parsed document.

        The document is None when the page was served from cache.
        """
        validate_request(opts)

        use_cache = self.cache is not None and is_cacheable(opts)
        key = cache_key(opts.url, opts.selector)
        if use_cache:
            cached, found = self.cache.get(key)  # type: ignore[union-attr]
            if found and cached is not None:
                return cached, None

        page, doc = await self._fetch_document(opts)

        if use_cache and page.status_code < 400:
            self.cache.set(key, page, self.cache_ttl)  # type: ignore[union-attr]
        return page, doc

    async def fetch_document(self, opts: RequestOptions) -> Tuple[PageData, BeautifulSoup]:
        """Fetch ``opts.url`` over the network, bypassing the cache, and return the full parsed document."""
        validate_request(opts)
        return await self._fetch_document(opts)

    async def _fetch_document(self, opts: RequestOptions) -> Tuple[PageData, BeautifulSoup]:
        with bind_request_id(url=opts.url, fetcher=self.name):
            start = time.monotonic()
            try:
                page, doc = await self._fetch(opts, start)
            except CrawlError as e:
                increment("fetch_errors", labels={"fetcher": self.name, "code": e.code.value})
                raise
            histogram("fetch_latency_seconds", time.monotonic() - start, labels={"strategy": "static"})
        return page, doc

    async def _fetch(self, opts: RequestOptions, start: float) -> Tuple[PageData, BeautifulSoup]:
        logger.debug("Starting fetch", url=opts.url)

        if self.rate_limiter is not None:
            await self.rate_limiter.wait(opts.url)

        session_data = load_session_or_none(self.session_store, opts.session_name)
        headers = self._build_headers(opts, session_data)
        cookies = {c.name: c.value for c in session_data.cookies} if session_data else None
        timeout = opts.timeout if opts.timeout > 0 else self.timeout

        async def attempt() -> Tuple[int, Dict[str, str], str]:
            return await self._request(opts.url, headers, cookies, timeout, opts.proxy or None)

        status, response_headers, body = await with_retry(attempt, self.retry_config)

        doc = await asyncio.to_thread(parse_html, body)
        content, html = extract_content(doc, opts.selector)
        if not opts.uses_default_selector and not html:
            logger.warning("Selector not found in document", selector=opts.selector, url=opts.url)
        parts = extract_page(doc)
        fields = extract_fields(doc, opts.fields) if opts.fields else {}

        elapsed_ms = int((time.monotonic() - start) * 1000)
        page = PageData(
            url=opts.url,
            status_code=status,
            title=parts.title,
            content=content,
            html=html,
            headers=response_headers,
            metadata=parts.metadata,
            links=parts.links,
            images=parts.images,
            scripts=parts.scripts,
            fields=fields,
            response_time_ms=elapsed_ms,
            strategy="static",
        )
        logger.debug(
            "Fetch completed",
            url=opts.url,
            status=status,
            response_time_ms=elapsed_ms,
            links=len(page.links),
            images=len(page.images),
        )
        return page, doc

    def _build_headers(self, opts: RequestOptions, session_data: Optional[SessionData]) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent, **DEFAULT_HEADERS}
        if session_data is not None:
            headers.update(session_data.headers)
        headers.update(opts.headers)
        return headers

    async def _request(
        self,
        url: str,
        headers: Dict[str, str],
        cookies: Optional[Dict[str, str]],
        timeout: float,
        proxy: Optional[str],
    ) -> Tuple[int, Dict[str, str], str]:
        session = await self._ensure_session()
        pooled_proxy: Optional[str] = None
        if proxy is None and self.proxy_pool is not None:
            proxy = pooled_proxy = self.proxy_pool.get_next()

        try:
            async with session.get(
                url,
                headers=headers,
                cookies=cookies,
                proxy=proxy,
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
            ) as response:
                if response.status in self.retry_config.retryable_status_codes:
                    raise UpstreamStatusError(response.status, url)
                body = await response.text(errors="replace")
                response_headers: Dict[str, str] = {}
                for name, value in response.headers.items():
                    response_headers.setdefault(name, value)
                status = response.status
        except asyncio.TimeoutError as e:
            if pooled_proxy:
                self.proxy_pool.mark_failed(pooled_proxy)  # type: ignore[union-attr]
            raise FetchTimeoutError(f"request timed out after {timeout}s", details={"url": url}) from e
        except aiohttp.ClientError as e:
            if pooled_proxy:
                self.proxy_pool.mark_failed(pooled_proxy)  # type: ignore[union-attr]
            raise NetworkError("failed to fetch URL", details={"url": url}) from e

        if pooled_proxy:
            self.proxy_pool.mark_healthy(pooled_proxy)  # type: ignore[union-attr]
        return status, response_headers, body

