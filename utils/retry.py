"""
Retry utilities for calls to the number provider.

Only ``ProviderUnavailable`` is retried. A rejection from the provider is
final and is re-raised immediately.
"""
import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from utils.exceptions import ProviderUnavailable
from utils.logger import app_logger

T = TypeVar("T")


def calculate_delay(attempt: int, base_delay: float, max_delay: float = 10.0, jitter: bool = True) -> float:
    """Exponential backoff for the given 1-based attempt number."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


async def retry_provider_call(
        func: Callable[..., Awaitable[T]],
        *args,
        attempts: int = 3,
        base_delay: float = 0.5,
        **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient provider failures.

    :param attempts: Total number of attempts, including the first one.
    :param base_delay: Delay before the first retry, doubled on each retry.
    :raises ProviderUnavailable: When every attempt failed transiently.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except ProviderUnavailable as e:
            if attempt == attempts:
                app_logger.error(f"Provider call {func.__name__} failed after {attempts} attempts: {e}")
                raise
            delay = calculate_delay(attempt, base_delay)
            app_logger.warning(
                f"Attempt {attempt}/{attempts} of {func.__name__} failed: {e}. Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
