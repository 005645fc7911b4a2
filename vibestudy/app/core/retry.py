"""Retry mechanism with exponential backoff for progress store writes.

This module provides a configurable retry policy and a helper that reports
the outcome of a retried operation instead of raising. Progress writes,
progress reads and current-user lookups all go through it.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

import httpx
from sqlalchemy.exc import InterfaceError, OperationalError

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger
from vibestudy.app.exceptions import AuthServiceUnavailableError, ProgressStoreError

logger = get_logger(__name__)

T = TypeVar("T")

# Status codes worth retrying even though they are 4xx
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (default: 3)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        max_delay: Upper bound for a single delay in seconds (default: 30.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        jitter: Add up to 25% random jitter on top of each delay
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(max_retries=5, base_delay=1.0, jitter=False)
        >>> policy.calculate_delay(attempt=2)
        4.0
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = field(
        default=(
            httpx.HTTPStatusError,
            httpx.TransportError,
            OperationalError,
            InterfaceError,
            ProgressStoreError,
            AuthServiceUnavailableError,
            ConnectionError,
            asyncio.TimeoutError,
        )
    )

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.sync_max_retries,
            base_delay=settings.sync_retry_base_delay,
            max_delay=settings.sync_retry_max_delay,
            jitter=settings.sync_retry_jitter,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        delay = min(base_delay * (exponential_base ^ attempt), max_delay),
        plus up to 25% jitter when enabled.

        Args:
            attempt: The current retry attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay += delay * 0.25 * random.random()
        return delay

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if an exception should trigger a retry.

        For HTTPStatusError, 5xx plus 408/425/429 are retryable; other 4xx
        (auth, validation, conflict) are not.
        """
        if isinstance(exception, httpx.HTTPStatusError):
            status = exception.response.status_code
            return status >= 500 or status in RETRYABLE_CLIENT_STATUSES

        return isinstance(exception, self.retryable_exceptions)


@dataclass
class RetryOutcome(Generic[T]):
    """Result of :func:`retry_with_backoff`."""

    success: bool
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "operation",
    log_extra: Optional[dict] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` until it succeeds, fails permanently or runs out of retries.

    Never raises for failures of ``operation``; the outcome carries the last
    error. Cancellation still propagates.
    """
    retry_policy = policy or RetryPolicy()
    extra = log_extra or {}

    for attempt in range(retry_policy.max_attempts):
        try:
            value = await operation()
            if attempt:
                logger.info(
                    f"{description} succeeded on attempt {attempt + 1}", extra=extra
                )
            return RetryOutcome(success=True, attempts=attempt + 1, value=value)
        except Exception as e:
            if not retry_policy.is_retryable(e):
                logger.warning(
                    f"Non-retryable error in {description}: {type(e).__name__}: {e}",
                    extra=extra,
                )
                return RetryOutcome(success=False, attempts=attempt + 1, error=e)

            if attempt >= retry_policy.max_retries:
                logger.warning(
                    f"Max retries ({retry_policy.max_retries}) exceeded for {description}: "
                    f"{type(e).__name__}: {e}",
                    extra=extra,
                )
                return RetryOutcome(success=False, attempts=attempt + 1, error=e)

            delay = retry_policy.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt + 1}/{retry_policy.max_retries} for {description} "
                f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s...",
                extra=extra,
            )
            await sleep(delay)

    # max_attempts is always >= 1, the loop returns before getting here
    raise AssertionError("unreachable")
