"""
Retry with exponential backoff for remote store calls.

Only transient failures are retried; every other error propagates on the
first attempt.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from ..config.settings import RetryConfig
from ..exceptions import NetworkTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the retry that follows a failed attempt.

    Args:
        attempt: Failed attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    return min(config.base_delay * (config.multiplier ** attempt), config.max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...] = (NetworkTransientError,),
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Await an operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function
        config: Attempts and delays
        retry_on: Exception types that trigger a retry
        operation_name: Name for logging
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately
    """
    attempts = max(1, config.max_attempts)

    for attempt in range(attempts):
        try:
            result = await operation()
            if attempt > 0:
                logger.info(f"{operation_name} succeeded after {attempt + 1} attempts")
            return result
        except retry_on as e:
            if attempt >= attempts - 1:
                logger.error(f"{operation_name} exhausted all {attempts} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(
                f"{operation_name} failed on attempt {attempt + 1}/{attempts}: {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
