"""
Backoff and retry for operations whose failure may be transient.

Three callers share this module:
- broker connects (producer and consumer start), retried until the cluster is
  reachable or ``max_retries`` is used up
- originator publishes, where a DeliveryError leaves the outcome unknown and a
  retry is safe because consumers deduplicate
- handler redelivery inside a partition, which only borrows the delay
  schedule from ``calculate_backoff``
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ticketflow.exceptions import BrokerConnectionError, DeliveryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures whose outcome may change on a later attempt
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    BrokerConnectionError,
    DeliveryError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass
class RetryConfig:
    """
    Retry schedule.

    The delay before retry ``n`` (0-based) is
    ``min(initial_delay * exponential_base ** n, max_delay)``, spread by up to
    ``jitter`` of itself in either direction so that partitions or processes
    failing together do not retry in lockstep.

    Attributes:
        max_retries: Retries after the first attempt. 0 disables retrying,
            None retries until the operation succeeds.
        initial_delay: Seconds before the first retry.
        max_delay: Upper bound on any single delay.
        exponential_base: Growth factor between consecutive delays.
        jitter: Fraction of the delay used as random spread (0-1).

    Example:
        >>> RetryConfig(max_retries=None, initial_delay=1.0, max_delay=30.0)
    """

    max_retries: int | None = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative (got {self.max_retries})")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay cannot be negative (got {self.initial_delay})")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay {self.max_delay} is below initial_delay {self.initial_delay}"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be at least 1.0 (got {self.exponential_base})")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must lie in [0, 1] (got {self.jitter})")

    def allows_retry(self, attempt: int) -> bool:
        """True if a retry may follow the given 0-based attempt."""
        if self.max_retries is None:
            return True
        return attempt < self.max_retries


class RetryError(Exception):
    """
    Raised by retry_async once the schedule is used up.

    Attributes:
        attempts: Attempts made, including the first
        last_error: Exception raised by the final attempt
    """

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Seconds to wait before retrying after the given 0-based attempt.

    Example:
        >>> config = RetryConfig(initial_delay=1.0, jitter=0.0)
        >>> [calculate_backoff(n, config) for n in range(3)]
        [1.0, 2.0, 4.0]
    """
    base = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    if not config.jitter:
        return base
    spread = base * config.jitter
    return max(0.0, base + random.uniform(-spread, spread))  # nosec B311 - not crypto


def is_retryable_exception(
    exception: BaseException,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    return isinstance(exception, retryable_exceptions)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
) -> T:
    """
    Await ``operation`` until it succeeds or the schedule runs out.

    Only ``retryable_exceptions`` are retried; anything else propagates from
    the attempt that raised it.

    Args:
        operation: Zero-argument coroutine function, called once per attempt
        config: Retry schedule (defaults if None)
        retryable_exceptions: Exception types worth another attempt
        operation_name: Label for log records

    Returns:
        The first successful result

    Raises:
        RetryError: If the last allowed attempt failed with a retryable error,
            chained to that error
    """
    config = config or RetryConfig()
    attempt = 0
    waited = 0.0

    while True:
        try:
            result = await operation()
        except retryable_exceptions as e:
            if not config.allows_retry(attempt):
                logger.error(
                    f"{operation_name} failed, giving up",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "waited_seconds": waited,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise RetryError(
                    f"{operation_name} failed after {attempt + 1} attempts: {e}",
                    attempts=attempt + 1,
                    last_error=e,
                ) from e

            delay = calculate_backoff(attempt, config)
            logger.warning(
                f"{operation_name} failed, retrying",
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_retries": config.max_retries,
                    "delay_seconds": delay,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await asyncio.sleep(delay)
            waited += delay
            attempt += 1
            continue

        if attempt:
            logger.info(
                f"{operation_name} succeeded after retrying",
                extra={"operation": operation_name, "attempts": attempt + 1},
            )
        return result


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "RetryError",
    "calculate_backoff",
    "is_retryable_exception",
    "retry_async",
]
