"""
Per-domain token bucket rate limiting.

Each host gets its own bucket that refills at ``requests_per_second`` up to
``burst`` tokens. Reservations may drive a bucket negative; the deficit is the
time the reserving caller must wait, which keeps concurrent waiters on one host
roughly first-come first-served without a queue.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from hybridcrawl.errors import OperationCancelledError, RateLimitExceededError
from hybridcrawl.observability import histogram
from hybridcrawl.utils import extract_host, sleep_or_cancel

logger = structlog.get_logger(__name__)

DEFAULT_REQUESTS_PER_SECOND = 5.0
DEFAULT_BURST = 10


@dataclass
class Reservation:
    """A token taken from a bucket, usable at ``time_to_act``."""

    ok: bool
    time_to_act: float = 0.0
    bucket: Optional[DomainBucket] = None
    _cancelled: bool = False

    def delay(self, now: Optional[float] = None) -> float:
        if not self.ok:
            return float("inf")
        now = time.monotonic() if now is None else now
        return max(0.0, self.time_to_act - now)

    def cancel(self) -> None:
        """Return the token if it has not been used yet."""
        if not self.ok or self._cancelled or self.bucket is None:
            return
        self._cancelled = True
        self.bucket.restore(self.time_to_act)


class DomainBucket:
    """Token bucket for a single host. Safe to share between threads and tasks."""

    def __init__(self, requests_per_second: float, burst: int) -> None:
        self._lock = threading.Lock()
        self.rate = requests_per_second
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def _advance(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def reserve(self, max_wait: Optional[float] = None, now: Optional[float] = None) -> Reservation:
        now = time.monotonic() if now is None else now
        with self._lock:
            self._advance(now)
            tokens = self._tokens - 1
            wait = -tokens / self.rate if tokens < 0 else 0.0
            if max_wait is not None and wait > max_wait:
                return Reservation(ok=False)
            self._tokens = tokens
            return Reservation(ok=True, time_to_act=now + wait, bucket=self)

    def restore(self, time_to_act: float) -> None:
        now = time.monotonic()
        if time_to_act < now:
            return
        with self._lock:
            self._advance(now)
            self._tokens = min(float(self.burst), self._tokens + 1)

    def set_limit(self, requests_per_second: float, burst: int) -> None:
        with self._lock:
            self._advance(time.monotonic())
            self.rate = requests_per_second
            self.burst = burst
            self._tokens = min(self._tokens, float(burst))

    @property
    def tokens(self) -> float:
        with self._lock:
            self._advance(time.monotonic())
            return self._tokens


class DomainRateLimiter:
    """
    Per-host token bucket limiter.

    URLs without a parsable host are never limited: the request is let through
    and fails later at the validation or network layer.
    """

    def __init__(
        self,
        requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
        burst: int = DEFAULT_BURST,
    ) -> None:
        self.requests_per_second = requests_per_second if requests_per_second > 0 else DEFAULT_REQUESTS_PER_SECOND
        self.burst = burst if burst > 0 else DEFAULT_BURST
        self._buckets: Dict[str, DomainBucket] = {}
        self._lock = threading.Lock()

    def _get_bucket(self, host: str) -> DomainBucket:
        bucket = self._buckets.get(host)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(host)
            if bucket is None:
                bucket = DomainBucket(self.requests_per_second, self.burst)
                self._buckets[host] = bucket
            return bucket

    async def wait(
        self,
        url: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Block until a request to ``url``'s host may proceed.

        Raises:
            RateLimitExceededError: the required wait is longer than ``timeout``.
            OperationCancelledError: ``cancel_event`` fired first; the token is returned.
        """
        host = extract_host(url)
        if not host:
            return

        reservation = self._get_bucket(host).reserve(max_wait=timeout)
        if not reservation.ok:
            raise RateLimitExceededError(
                f"rate limit wait for {host} would exceed {timeout:.3f}s",
                details={"host": host},
            )

        delay = reservation.delay()
        if delay <= 0:
            histogram("rate_limit_wait_seconds", 0.0)
            return

        logger.debug("Rate limit wait", host=host, delay=round(delay, 3))
        try:
            completed = await sleep_or_cancel(delay, cancel_event)
        except asyncio.CancelledError:
            reservation.cancel()
            raise
        if not completed:
            reservation.cancel()
            raise OperationCancelledError(f"rate limit wait for {host} cancelled")
        histogram("rate_limit_wait_seconds", delay)

    def allow(self, url: str) -> bool:
        """Take a token only if one is available right now."""
        host = extract_host(url)
        if not host:
            return True
        return self._get_bucket(host).reserve(max_wait=0.0).ok

    def reserve(self, url: str) -> Reservation:
        host = extract_host(url)
        if not host:
            return Reservation(ok=True, time_to_act=time.monotonic())
        return self._get_bucket(host).reserve()

    def set_limit(self, domain: str, requests_per_second: float, burst: int) -> None:
        """Change the rate for one host, creating its bucket if needed."""
        host = domain.lower()
        with self._lock:
            bucket = self._buckets.get(host)
            if bucket is None:
                self._buckets[host] = DomainBucket(requests_per_second, burst)
                return
        bucket.set_limit(requests_per_second, burst)

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        return {
            host: {"rate": bucket.rate, "burst": bucket.burst, "tokens": round(bucket.tokens, 3)}
            for host, bucket in list(self._buckets.items())
        }
