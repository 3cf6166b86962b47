"""Retry utilities with exponential backoff.

Usage:
    from campaign_bridge.core.retry import RetryConfig, retry_async

    config = RetryConfig(max_attempts=5, base_delay=0.5)
    await retry_async(store.ping, config=config)

    # Deterministic schedule (no jitter): 1s, 2s, 4s
    RetryConfig(base_delay=1.0, jitter=0.0).calculate_delay(3)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_error: Exception | None = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # 10% jitter, 0 for a fixed schedule
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)
    non_retryable_exceptions: tuple[type[Exception], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt with exponential backoff.

        Args:
            attempt: Current attempt number (1-based)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )

        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Check if exception should trigger retry.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, self.non_retryable_exceptions):
            return False

        return isinstance(exception, self.retryable_exceptions)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> T:
    """Execute async function with retry.

    Args:
        func: Async function to call
        *args: Positional arguments
        config: Retry configuration
        **kwargs: Keyword arguments

    Returns:
        Function result

    Raises:
        RetryExhausted: When every attempt failed with a retryable error
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))
    last_exception: Exception | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            last_exception = e

            if isinstance(e, config.non_retryable_exceptions) or not isinstance(
                e, config.retryable_exceptions
            ):
                raise

            if attempt >= config.max_attempts:
                break

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt}/{config.max_attempts} for {name}: "
                f"{type(e).__name__}: {e}. Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_attempts} attempts failed for {name}",
        last_error=last_exception,
        attempts=config.max_attempts,
    )
