"""
Concurrent scraping of many requests with per-job failure isolation.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections import OrderedDict
from contextlib import aclosing, asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence

import psutil
import structlog

from hybridcrawl.errors import CrawlError, WorkerPanicError
from hybridcrawl.observability import increment
from hybridcrawl.protocols import RateLimiter, RequestOptions, Scraper, ScrapeResult
from hybridcrawl.utils import extract_host

from .workers import run_worker_pool

logger = structlog.get_logger(__name__)

MAX_CONCURRENCY = 50
MEMORY_PER_WORKER_BYTES = 50 * 1024 * 1024


def optimal_concurrency() -> int:
    """
    Worker count for I/O bound scraping: three per CPU capped at 50, and no more
    than available memory allows at roughly 50 MB per worker.
    """
    cpus = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    optimal = min(cpus * 3, MAX_CONCURRENCY)

    by_memory = int(psutil.virtual_memory().available // MEMORY_PER_WORKER_BYTES)
    if 0 < by_memory < optimal:
        return by_memory
    return optimal


def group_by_domain(requests: Iterable[RequestOptions]) -> Dict[str, List[RequestOptions]]:
    """Requests bucketed by host, preserving first-seen host order."""
    groups: Dict[str, List[RequestOptions]] = OrderedDict()
    for opts in requests:
        groups.setdefault(extract_host(opts.url), []).append(opts)
    return groups


def interleave_domains(groups: Dict[str, List[RequestOptions]]) -> List[RequestOptions]:
    """Round-robin across domain groups so no single host monopolizes the workers."""
    ordered: List[RequestOptions] = []
    queues = [list(group) for group in groups.values()]
    index = 0
    while queues:
        remaining = []
        for queue in queues:
            if index < len(queue):
                ordered.append(queue[index])
            if index + 1 < len(queue):
                remaining.append(queue)
        queues = remaining
        index += 1
    return ordered


def summarize_failures(results: Iterable) -> int:
    """Number of failed results; the exit status a batch command should report."""
    failed = 0
    panicked = 0
    total = 0
    for result in results:
        total += 1
        if not result.success:
            failed += 1
        if getattr(result, "panicked", False):
            panicked += 1
    if failed:
        logger.warning("Batch finished with failures", total=total, failed=failed, panicked=panicked)
    return failed


class BatchScraper:
    """Fans ``RequestOptions`` out to a ``Scraper`` across a bounded worker pool."""

    def __init__(
        self,
        scraper: Scraper,
        concurrency: int = 0,
        rate_limiter: Optional[RateLimiter] = None,
        per_domain_concurrency: Optional[int] = None,
    ) -> None:
        self.scraper = scraper
        self.concurrency = concurrency if concurrency > 0 else optimal_concurrency()
        self.rate_limiter = rate_limiter
        self.per_domain_concurrency = per_domain_concurrency or 0
        self._domain_slots: Dict[str, asyncio.Semaphore] = {}

    async def scrape_batch(
        self,
        requests: Sequence[RequestOptions],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ScrapeResult]:
        """Yield exactly one ``ScrapeResult`` per request, in completion order."""
        jobs = interleave_domains(group_by_domain(requests))
        logger.info("Starting batch", requests=len(jobs), concurrency=self.concurrency, scraper=self.scraper.name)

        async def handle(opts: RequestOptions) -> ScrapeResult:
            return await self._scrape_one(opts, cancel_event)

        stream = run_worker_pool(
            jobs, handle, self._panic_result, self.concurrency, cancel_event=cancel_event, pool_name="scrape"
        )
        async with aclosing(stream):
            async for result in stream:
                outcome = "panicked" if result.panicked else ("success" if result.success else "failed")
                increment("batch_results", labels={"pool": "scrape", "outcome": outcome})
                yield result

    async def collect(
        self,
        requests: Sequence[RequestOptions],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ScrapeResult]:
        return [result async for result in self.scrape_batch(requests, cancel_event)]

    async def _scrape_one(self, opts: RequestOptions, cancel_event: Optional[asyncio.Event]) -> ScrapeResult:
        start = time.monotonic()
        if self.rate_limiter is not None:
            try:
                await self.rate_limiter.wait(opts.url, cancel_event=cancel_event)
            except CrawlError as e:
                logger.warning("Rate limiter error, continuing", url=opts.url, error=str(e))

        async with self._domain_slot(opts.url):
            try:
                data = await self.scraper.fetch(opts)
            except CrawlError as e:
                logger.debug("Batch job failed", url=opts.url, error=str(e))
                return ScrapeResult(url=opts.url, error=e, duration=time.monotonic() - start)

        return ScrapeResult(url=opts.url, data=data, duration=time.monotonic() - start)

    @asynccontextmanager
    async def _domain_slot(self, url: str) -> AsyncIterator[None]:
        if self.per_domain_concurrency <= 0:
            yield
            return
        host = extract_host(url)
        slot = self._domain_slots.get(host)
        if slot is None:
            slot = self._domain_slots.setdefault(host, asyncio.Semaphore(self.per_domain_concurrency))
        async with slot:
            yield

    @staticmethod
    def _panic_result(opts: RequestOptions, error: Exception) -> ScrapeResult:
        return ScrapeResult(url=opts.url, error=WorkerPanicError(opts.url, error), panicked=True)
