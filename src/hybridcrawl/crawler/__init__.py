"""Request pacing and resilience: rate limiting, retry and proxy rotation."""

from .proxy_pool import ProxyPool
from .rate_limiter import DomainRateLimiter, Reservation
from .retry import RetryConfig, should_retry, with_retry

__all__ = ["DomainRateLimiter", "ProxyPool", "Reservation", "RetryConfig", "should_retry", "with_retry"]
