"""
Bounded worker pool shared by the batch scraper and the download pool.

Jobs are queued up front; ``min(concurrency, len(jobs))`` workers drain the
queue and push one result per job onto a results queue that the caller
consumes as an async iterator, in completion order.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog

logger = structlog.get_logger(__name__)

J = TypeVar("J")
R = TypeVar("R")

_WORKER_DONE = object()


async def run_worker_pool(
    jobs: Sequence[J],
    handle: Callable[[J], Awaitable[R]],
    on_panic: Callable[[J, Exception], R],
    concurrency: int,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    pool_name: str = "batch",
) -> AsyncIterator[R]:
    """
    Run ``handle`` over ``jobs`` and yield results as they complete.

    An exception escaping ``handle`` is logged with its traceback and turned
    into a result by ``on_panic``; it never takes down the other workers.
    Setting ``cancel_event`` stops workers from pulling further jobs. Closing
    the iterator (or cancelling its consumer) cancels the workers.
    """
    if not jobs:
        return

    job_queue: "asyncio.Queue[J]" = asyncio.Queue(maxsize=len(jobs))
    for job in jobs:
        job_queue.put_nowait(job)

    num_workers = max(1, min(concurrency, len(jobs)))
    # Room for every result plus one completion marker per worker
    results: "asyncio.Queue[object]" = asyncio.Queue(maxsize=len(jobs) + num_workers)

    async def worker(worker_id: str) -> None:
        try:
            while cancel_event is None or not cancel_event.is_set():
                try:
                    job = job_queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                try:
                    result = await handle(job)
                except Exception as e:
                    logger.error("Worker job panicked", pool=pool_name, worker_id=worker_id, error=str(e), exc_info=True)
                    result = on_panic(job, e)
                finally:
                    job_queue.task_done()
                results.put_nowait(result)
        finally:
            results.put_nowait(_WORKER_DONE)

    logger.debug("Starting worker pool", pool=pool_name, workers=num_workers, jobs=len(jobs))
    tasks = [asyncio.create_task(worker(f"{pool_name}-worker-{i}")) for i in range(num_workers)]

    finished = 0
    try:
        while finished < num_workers:
            item = await results.get()
            if item is _WORKER_DONE:
                finished += 1
                continue
            yield item  # type: ignore[misc]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set() and not job_queue.empty():
            logger.info("Worker pool cancelled", pool=pool_name, unstarted=job_queue.qsize())
