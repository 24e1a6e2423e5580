"""
Retry with exponential backoff for async operations, built on tenacity.

Failures are classified before sleeping: errors that expose an HTTP status are
retried only for the configured status allowlist, timeouts are always retried,
errors with a ``temporary()`` predicate are asked, and anything else is
retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, List, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt
from tenacity import wait_exponential

from hybridcrawl.errors import OperationCancelledError, RetryExhaustedError
from hybridcrawl.observability import increment
from hybridcrawl.utils import sleep_or_cancel

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule and retry allowlist."""

    max_attempts: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = field(default_factory=lambda: DEFAULT_RETRYABLE_STATUS_CODES)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff durations cannot be negative")

    def backoff_for(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        delay = self.initial_backoff * (self.multiplier**attempt)
        return min(delay, self.max_backoff)


def status_code_of(error: BaseException) -> Optional[int]:
    """HTTP status carried by ``error``, if any."""
    getter = getattr(error, "get_status_code", None)
    if callable(getter):
        code = getter()
        if isinstance(code, int) and code > 0:
            return code
    for attr in ("status_code", "status"):
        code = getattr(error, attr, None)
        if isinstance(code, int) and code > 0:
            return code
    return None


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    predicate = getattr(error, "timeout", None)
    if callable(predicate):
        return bool(predicate())
    return False


def should_retry(error: BaseException, config: RetryConfig) -> bool:
    """Decide whether ``error`` deserves another attempt."""
    if not isinstance(error, Exception):
        # Cancellation and interpreter exits are never retried
        return False

    status = status_code_of(error)
    if status is not None:
        return status in config.retryable_status_codes

    if is_timeout_error(error):
        return True

    predicate = getattr(error, "temporary", None)
    if callable(predicate):
        return bool(predicate())

    return True


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    cancel_event: Optional[asyncio.Event] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails with a non-retryable error, or
    ``config.max_attempts`` attempts have been made.

    Raises:
        The operation's own exception when it is not retryable.
        OperationCancelledError: ``cancel_event`` was set during a backoff sleep.
        RetryExhaustedError: every attempt failed; chained from the last error.
    """
    cfg = config or RetryConfig()
    failures: List[BaseException] = []

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        if error is not None:
            failures.append(error)
        increment("retry_attempts")
        logger.debug(
            "Retrying after backoff",
            attempt=state.attempt_number,
            max_attempts=cfg.max_attempts,
            backoff=state.next_action.sleep if state.next_action else None,
            error=str(error),
        )

    async def sleep(delay: float) -> None:
        if not await sleep_or_cancel(delay, cancel_event):
            last = failures[-1] if failures else None
            raise OperationCancelledError("retry cancelled during backoff") from last

    retrying = AsyncRetrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(multiplier=cfg.initial_backoff, exp_base=cfg.multiplier, min=0, max=cfg.max_backoff),
        retry=retry_if_exception(lambda e: should_retry(e, cfg)),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=False,
    )

    try:
        result = await retrying(operation)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        if last_error is None:
            last_error = e
        logger.warning("Max retry attempts exceeded", attempts=cfg.max_attempts, error=str(last_error))
        raise RetryExhaustedError(cfg.max_attempts, last_error) from last_error

    attempts = retrying.statistics.get("attempt_number", 1)
    if attempts > 1:
        logger.debug("Retry succeeded", attempts=attempts)
    return result
