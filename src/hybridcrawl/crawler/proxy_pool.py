"""
Round-robin proxy rotation with failure cooldown.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300.0


class ProxyPool:
    """
    Hands out proxies in insertion order, skipping ones that failed recently.

    When every proxy is inside its cooldown window the next one in order is
    returned anyway, so callers always get a proxy from a non-empty pool.
    """

    def __init__(self, proxies: Sequence[str], cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS) -> None:
        self._proxies: List[str] = [p for p in proxies if p]
        self.cooldown_seconds = cooldown_seconds
        self._index = 0
        self._failed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._proxies)

    def get_next(self) -> Optional[str]:
        with self._lock:
            if not self._proxies:
                return None

            now = time.monotonic()
            for _ in range(len(self._proxies)):
                proxy = self._proxies[self._index]
                self._index = (self._index + 1) % len(self._proxies)

                failed_at = self._failed.get(proxy)
                if failed_at is None:
                    return proxy
                if now - failed_at >= self.cooldown_seconds:
                    del self._failed[proxy]
                    return proxy

            # Every proxy is cooling down
            proxy = self._proxies[self._index]
            self._index = (self._index + 1) % len(self._proxies)
            return proxy

    def mark_failed(self, proxy: str) -> None:
        with self._lock:
            self._failed[proxy] = time.monotonic()
        logger.debug("Proxy marked failed", proxy=proxy, cooldown=self.cooldown_seconds)

    def mark_healthy(self, proxy: str) -> None:
        with self._lock:
            self._failed.pop(proxy, None)

    def healthy_count(self) -> int:
        now = time.monotonic()
        with self._lock:
            return sum(
                1 for p in self._proxies if p not in self._failed or now - self._failed[p] >= self.cooldown_seconds
            )
