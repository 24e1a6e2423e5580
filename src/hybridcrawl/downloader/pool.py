"""
Concurrent downloads over a bounded worker pool.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Sequence

import structlog

from hybridcrawl.config.config import DEFAULT_USER_AGENT
from hybridcrawl.crawler.rate_limiter import DomainRateLimiter
from hybridcrawl.engine.workers import run_worker_pool
from hybridcrawl.errors import CrawlError, WorkerPanicError
from hybridcrawl.observability import increment
from hybridcrawl.protocols import DownloadOptions, DownloadResult, RateLimiter

from .downloader import Downloader

logger = structlog.get_logger(__name__)

DEFAULT_DOWNLOAD_CONCURRENCY = 5
MAX_DOWNLOAD_CONCURRENCY = 50

ProgressCallback = Callable[[DownloadResult, int, int], None]


def clamp_download_concurrency(concurrency: int) -> int:
    if concurrency <= 0:
        return DEFAULT_DOWNLOAD_CONCURRENCY
    return min(concurrency, MAX_DOWNLOAD_CONCURRENCY)


class DownloadPool:
    """Runs a ``Downloader`` over many URLs with per-domain pacing."""

    def __init__(
        self,
        concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        downloader: Optional[Downloader] = None,
        output_dir: Optional[Path] = None,
    ) -> None:
        self.concurrency = clamp_download_concurrency(concurrency)
        self.output_dir = output_dir
        self.downloader = downloader or Downloader(timeout=timeout, user_agent=user_agent)
        self.rate_limiter = rate_limiter if rate_limiter is not None else DomainRateLimiter(5.0, 10)

    async def close(self) -> None:
        await self.downloader.close()

    async def __aenter__(self) -> DownloadPool:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def stream(
        self,
        urls: Sequence[str],
        options: Optional[DownloadOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> AsyncIterator[DownloadResult]:
        """
        Yield one ``DownloadResult`` per URL as downloads finish.

        ``progress`` is called after each result with ``(result, done, total)``.
        Without ``options``, files land in the pool's ``output_dir``.
        """
        if options is None:
            options = DownloadOptions(output_dir=self.output_dir) if self.output_dir is not None else DownloadOptions()
        total = len(urls)
        done = 0

        async def handle(url: str) -> DownloadResult:
            if self.rate_limiter is not None:
                try:
                    await self.rate_limiter.wait(url, cancel_event=cancel_event)
                except CrawlError as e:
                    logger.warning("Rate limiter error, continuing", url=url, error=str(e))
            return await self.downloader.download(url, options, cancel_event)

        logger.info("Starting downloads", urls=total, concurrency=self.concurrency, output_dir=str(options.output_dir))
        results = run_worker_pool(
            list(urls), handle, self._panic_result, self.concurrency, cancel_event=cancel_event, pool_name="download"
        )
        async with aclosing(results):
            async for result in results:
                done += 1
                outcome = "panicked" if result.panicked else ("success" if result.success else "failed")
                increment("batch_results", labels={"pool": "download", "outcome": outcome})
                if progress is not None:
                    progress(result, done, total)
                yield result

    async def download_batch(
        self,
        urls: Sequence[str],
        options: Optional[DownloadOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[DownloadResult]:
        return [result async for result in self.stream(urls, options, cancel_event, progress)]

    @staticmethod
    def _panic_result(url: str, error: Exception) -> DownloadResult:
        return DownloadResult(url=url, error=WorkerPanicError(url, error), panicked=True)
