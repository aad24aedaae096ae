"""Retry helper for flaky async backend calls."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float = 2.0) -> Callable[[int], float]:
    """Delay of base * 2^attempt seconds after the given 0-based attempt."""
    def delay(attempt: int) -> float:
        return base * (2 ** attempt)
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[Exception], bool],
    max_attempts: int = 3,
    backoff: Optional[Callable[[int], float]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run an async operation, retrying retryable failures.

    Args:
        operation: Zero-argument coroutine factory
        is_retryable: Classifies an exception as transient
        max_attempts: Total number of attempts
        backoff: Delay after a failed 0-based attempt (default 2s * 2^attempt)
        sleep: Awaitable sleep, injectable for tests
        description: Label used in log messages

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error immediately.
    """
    backoff = backoff or exponential_backoff()
    last_error: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.warning(f"{description} failed with non-retryable error: {e}")
                raise

            remaining = max_attempts - attempt - 1
            if remaining <= 0:
                break

            delay = backoff(attempt)
            logger.warning(
                f"{description} attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)

    logger.error(f"{description} failed after {max_attempts} attempts: {last_error}")
    raise last_error
