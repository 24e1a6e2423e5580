"""
Fixed-size pool of pre-warmed headless browser contexts.

One Chromium process is shared by every slot; each slot owns an isolated
Playwright ``BrowserContext`` with a single page. Idle slots sit in a bounded
queue, so at most ``size`` contexts exist and a slot is always either idle,
held by exactly one fetch, or being torn down.
"""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, List, Optional

import structlog
from playwright.async_api import async_playwright

from hybridcrawl.config.config import DEFAULT_USER_AGENT
from hybridcrawl.errors import BrowserPoolClosedError, BrowserPoolError, BrowserPoolTimeoutError
from hybridcrawl.observability import gauge

from .chrome import find_chrome, launch_args

logger = structlog.get_logger(__name__)

DEFAULT_POOL_SIZE = 3
MAX_POOL_SIZE = 10
RESET_TIMEOUT_MS = 5000
VIEWPORT = {"width": 1920, "height": 1080}


def clamp_pool_size(size: int) -> int:
    if size <= 0:
        return DEFAULT_POOL_SIZE
    return min(size, MAX_POOL_SIZE)


@dataclass
class BrowserContext:
    """One pooled Playwright context and its page."""

    id: int
    context: Any
    page: Any
    closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.context.close()
        except Exception as e:
            logger.debug("Error closing browser context", context_id=self.id, error=str(e))


class BrowserPool:
    """
    Pool of reusable browser contexts.

    Create with ``await BrowserPool.create(...)``; hand contexts out with
    ``acquire``/``release`` or the ``lease`` context manager.
    """

    def __init__(
        self,
        size: int = DEFAULT_POOL_SIZE,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        proxy: Optional[str] = None,
        chrome_path: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._size = clamp_pool_size(size)
        self.headless = headless
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.proxy = proxy
        self.chrome_path = chrome_path
        self.extra_args = extra_args or []
        self._playwright_factory = playwright_factory
        self._queue: "asyncio.Queue[Optional[BrowserContext]]" = asyncio.Queue(maxsize=self._size)
        self._ids = itertools.count()
        self._playwright: Any = None
        self._browser: Any = None
        self._closed = False
        self._started = False

    @classmethod
    async def create(cls, size: int = DEFAULT_POOL_SIZE, **kwargs: Any) -> BrowserPool:
        pool = cls(size, **kwargs)
        await pool.start()
        return pool

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def available(self) -> int:
        """Idle contexts ready to be acquired."""
        if self._closed:
            return 0
        return self._queue.qsize()

    async def start(self) -> None:
        """Launch the browser and warm every context. All-or-nothing."""
        if self._started:
            return
        self._started = True
        logger.debug("Creating browser pool", size=self._size, headless=self.headless)

        created: List[BrowserContext] = []
        try:
            self._playwright = await self._playwright_factory().start()
            executable = self.chrome_path or find_chrome()
            launch_kwargs: dict = {"headless": self.headless, "args": launch_args(self.extra_args)}
            if executable:
                launch_kwargs["executable_path"] = executable
            if self.proxy:
                launch_kwargs["proxy"] = {"server": self.proxy}
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)

            for _ in range(self._size):
                slot = await self._new_context()
                created.append(slot)
                logger.debug("Browser context initialized", context_id=slot.id)
        except Exception as e:
            for slot in created:
                await slot.close()
            await self._shutdown_browser()
            self._closed = True
            raise BrowserPoolError(f"failed to warm up browser context {len(created)}") from e

        for slot in created:
            self._queue.put_nowait(slot)
        gauge("browser_contexts_available", self.available())
        logger.info("Browser pool ready", size=self._size)

    async def _new_context(self) -> BrowserContext:
        context = await self._browser.new_context(user_agent=self.user_agent, viewport=VIEWPORT)
        try:
            page = await context.new_page()
            await page.goto("about:blank")
        except Exception:
            await context.close()
            raise
        return BrowserContext(id=next(self._ids), context=context, page=page)

    async def acquire(self, timeout: Optional[float] = None) -> BrowserContext:
        """
        Take an idle context, waiting up to ``timeout`` seconds (forever if None or <= 0).

        Raises:
            BrowserPoolTimeoutError: nothing became idle in time.
            BrowserPoolClosedError: the pool is or became closed.
        """
        if self._closed:
            raise BrowserPoolClosedError("browser pool is closed")

        try:
            if timeout is not None and timeout > 0:
                slot = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            else:
                slot = await self._queue.get()
        except asyncio.TimeoutError as e:
            raise BrowserPoolTimeoutError(
                f"timeout acquiring browser context after {timeout}s",
                details={"pool_size": self._size},
            ) from e

        if slot is None or self._closed:
            if slot is not None:
                await slot.close()
            else:
                # Wake the next waiter too
                self._queue.put_nowait(None)
            raise BrowserPoolClosedError("browser pool closed while acquiring")

        gauge("browser_contexts_available", self.available())
        logger.debug("Browser context acquired", context_id=slot.id, available=self.available())
        return slot

    async def release(self, slot: BrowserContext) -> None:
        """
        Return a context to the pool.

        The page is reset to ``about:blank``; a context whose reset fails is
        torn down and replaced with a fresh one so a dead context is never
        handed out again.
        """
        if slot.closed:
            await self._replace(slot)
            return
        if self._closed:
            await slot.close()
            return

        try:
            await slot.page.goto("about:blank", timeout=RESET_TIMEOUT_MS)
        except Exception as e:
            logger.warning("Browser context reset failed, replacing", context_id=slot.id, error=str(e))
            await slot.close()
            await self._replace(slot)
            return

        await self._put(slot)

    async def _replace(self, dead: BrowserContext) -> None:
        if self._closed:
            return
        try:
            fresh = await self._new_context()
        except Exception as e:
            logger.error("Could not replace browser context, pool shrinks", context_id=dead.id, error=str(e))
            return
        await self._put(fresh)

    async def _put(self, slot: BrowserContext) -> None:
        # The pool may have closed while the slot was being reset or created
        if self._closed:
            await slot.close()
            return
        try:
            self._queue.put_nowait(slot)
        except asyncio.QueueFull:
            logger.warning("Browser pool full, closing extra context", context_id=slot.id)
            await slot.close()
            return
        gauge("browser_contexts_available", self.available())

    @asynccontextmanager
    async def lease(self, timeout: Optional[float] = None) -> AsyncIterator[BrowserContext]:
        slot = await self.acquire(timeout)
        try:
            yield slot
        finally:
            await self.release(slot)

    async def close(self) -> None:
        """Close idle contexts, the browser and Playwright. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Closing browser pool")

        idle: List[BrowserContext] = []
        while True:
            try:
                slot = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if slot is not None:
                idle.append(slot)
        for slot in idle:
            await slot.close()

        # Unblock anyone still waiting in acquire()
        for _ in range(self._queue.maxsize):
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                break

        await self._shutdown_browser()
        gauge("browser_contexts_available", 0)
        logger.info("Browser pool closed")

    async def _shutdown_browser(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug("Error closing browser", error=str(e))
            self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("Error stopping playwright", error=str(e))
            self._playwright = None

    async def __aenter__(self) -> BrowserPool:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
