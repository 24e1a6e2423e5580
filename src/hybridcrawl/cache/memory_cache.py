"""
Size-bounded LRU response cache with per-entry TTL.

The cache accounts an approximate byte cost per entry and evicts least recently
used entries synchronously inside ``set`` so the accounted size never exceeds
``max_size``. Expired entries are treated as misses on read and removed by a
background sweeper thread.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from hybridcrawl.observability import gauge, increment
from hybridcrawl.protocols import DEFAULT_SELECTOR, PageData

logger = structlog.get_logger(__name__)

DEFAULT_MAX_SIZE = 100 * 1024 * 1024
DEFAULT_TTL = 300.0
ENTRY_OVERHEAD = 1024
SWEEP_INTERVAL = 60.0


def cache_key(url: str, selector: str = "", namespace: str = "") -> str:
    """
    Key for a (URL, selector) pair; the full-page selector shares the URL's key.

    Fetchers that render the same URL differently pass a ``namespace`` so
    their entries never answer each other's lookups.
    """
    key = f"{url}::{selector}" if selector and selector != DEFAULT_SELECTOR else url
    if namespace:
        return f"{namespace}:{key}"
    return key


def estimate_size(data: PageData) -> int:
    text = data.html + data.content + data.title
    return len(text.encode("utf-8")) + ENTRY_OVERHEAD


@dataclass
class CacheEntry:
    key: str
    data: PageData
    expires_at: float
    size: int


class MemoryCache:
    """
    In-memory LRU cache of ``PageData`` bounded by total accounted bytes.

    The lock only guards in-memory bookkeeping and is never held across an
    ``await``, so the cache can be shared by tasks and threads alike.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        *,
        sweep_interval: float = SWEEP_INTERVAL,
        start_sweeper: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size if max_size > 0 else DEFAULT_MAX_SIZE
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()
        self._clock = clock
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start_sweeper:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(sweep_interval,),
                name="hybridcrawl-cache-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    @property
    def size_bytes(self) -> int:
        return self._size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Tuple[Optional[PageData], bool]:
        expired = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
            elif self._clock() >= entry.expires_at:
                self._misses += 1
                expired = True
            else:
                self._entries.move_to_end(key)
                self._hits += 1
                increment("cache_hits")
                logger.debug("Cache hit", key=key)
                return entry.data, True

        increment("cache_misses")
        if expired:
            self._schedule_expiry(key)
        return None, False

    def set(self, key: str, data: PageData, ttl: float = 0) -> None:
        if ttl <= 0:
            ttl = DEFAULT_TTL
        size = estimate_size(data)
        entry = CacheEntry(key=key, data=data, expires_at=self._clock() + ttl, size=size)

        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self._size -= old.size

            if size > self.max_size:
                logger.warning("Entry larger than cache, not cached", key=key, size_bytes=size, max_size=self.max_size)
                gauge("cache_size_bytes", self._size)
                return

            while self._entries and self._size + size > self.max_size:
                evicted_key, evicted = self._entries.popitem(last=False)
                self._size -= evicted.size
                increment("cache_evictions")
                logger.debug("Evicted from cache (LRU)", key=evicted_key, size_bytes=evicted.size)

            self._entries[key] = entry
            self._size += size
            gauge("cache_size_bytes", self._size)

        logger.debug("Cached response", key=key, ttl=ttl, size_bytes=size)

    def delete(self, key: str) -> None:
        with self._lock:
            self._remove_locked(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0
            self._hits = 0
            self._misses = 0
            gauge("cache_size_bytes", 0)
        logger.debug("Cache cleared")

    def close(self) -> None:
        """Stop the background sweeper. Entries stay readable."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)
        self._sweeper = None
        logger.debug("Cache closed")

    def sweep_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        removed = 0
        with self._lock:
            now = self._clock()
            for key in [k for k, e in self._entries.items() if now >= e.expires_at]:
                self._remove_locked(key)
                removed += 1
        if removed:
            logger.debug("Swept expired cache entries", removed=removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "size_bytes": self._size,
                "max_size": self.max_size,
                "utilization": self._size / self.max_size * 100,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / total * 100) if total else 0.0,
            }

    # --- internals ---

    def _remove_locked(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size -= entry.size
            gauge("cache_size_bytes", self._size)

    def _delete_if_expired(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() >= entry.expires_at:
                self._remove_locked(key)

    def _schedule_expiry(self, key: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._delete_if_expired(key)
            return
        loop.call_soon(self._delete_if_expired, key)

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.sweep_expired()
        logger.debug("Cache sweeper stopped")
