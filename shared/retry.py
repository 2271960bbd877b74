"""
Retry mechanism for resilient operations.

Two flavours are provided:

- ``retry_on_exception``: decorator that retries an async function while it
  raises one of the given exception types.
- ``retry_until``: retries an async function while its *result* is judged
  retryable, for callers that report failures as values rather than raising.

Both share ``RetryConfig`` and the same backoff schedule: delays grow from
``base_delay`` by ``exponential_base``, are capped at ``max_delay``, jittered
downwards by at most ``jitter`` (a fraction), and never shrink from one
attempt to the next.
"""

import asyncio
import functools
import random
from typing import Any, Optional, Callable, Awaitable, Tuple, TypeVar

from shared.logging import get_logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: float = 0.1,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def _calculate_delay(attempt: int, config: RetryConfig, previous: float = 0.0) -> float:
    """Calculate delay after a failed ``attempt`` (1-based)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= 1.0 - random.uniform(0.0, config.jitter)

    # Non-decreasing; previous is already within the cap
    return max(0.0, delay, previous)


def backoff_delays(config: RetryConfig):
    """Yield the wait before each retry: ``max_attempts - 1`` values."""
    previous = 0.0
    for attempt in range(1, config.max_attempts):
        previous = _calculate_delay(attempt, config, previous)
        yield previous


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None,
                       sleep: Sleep = asyncio.sleep) -> Callable:
    """Decorator for retrying async functions on exceptions."""

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{func.__name__}")
            delays = backoff_delays(config)

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            "Retry succeeded",
                            attempt=attempt,
                            function=func.__name__
                        )

                    return result

                except exceptions as e:
                    if attempt == config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            function=func.__name__,
                            error=str(e)
                        )
                        raise RetryError(
                            f"Function {func.__name__} failed after {config.max_attempts} attempts",
                            last_exception=e,
                            attempts=config.max_attempts
                        ) from e

                    delay = next(delays)

                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay=delay,
                        function=func.__name__,
                        error=str(e)
                    )

                    await sleep(delay)

        return wrapper

    return decorator


async def retry_until(func: Callable[[], Awaitable[T]],
                      should_retry: Callable[[T], bool],
                      config: RetryConfig,
                      sleep: Sleep = asyncio.sleep,
                      name: str = "operation") -> Tuple[T, int]:
    """Call ``func`` until ``should_retry`` rejects its result or attempts run out.

    Returns the last result together with the number of attempts made.
    """
    logger = get_logger(f"retry.{name}")
    delays = backoff_delays(config)
    attempt = 0

    while True:
        attempt += 1
        result = await func()

        if not should_retry(result):
            if attempt > 1:
                logger.info("Retry settled", attempt=attempt, function=name)
            return result, attempt

        if attempt >= config.max_attempts:
            logger.warning(
                "All retry attempts exhausted",
                attempt=attempt,
                max_attempts=config.max_attempts,
                function=name
            )
            return result, attempt

        delay = next(delays)
        logger.debug(
            "Retryable result, waiting before next attempt",
            attempt=attempt,
            delay=delay,
            function=name
        )
        await sleep(delay)
