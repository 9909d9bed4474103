"""Retry utilities with exponential backoff."""

import asyncio
import inspect
import time
from functools import wraps
from typing import Callable, Tuple, Type

import structlog

log = structlog.stdlib.get_logger()


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2**attempt), max_delay)


def exponential_backoff_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
) -> Callable:
    """
    Decorator that retries a function with exponential backoff.

    Works on plain functions and on coroutine functions; coroutines back off
    with asyncio.sleep so the event loop keeps running.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry

    Returns:
        Decorated function with retry logic
    """

    def _on_failure(func: Callable, attempt: int, error: Exception) -> float:
        if attempt == max_retries:
            log.error(
                "max_retries_reached",
                function=func.__name__,
                max_retries=max_retries,
                error=str(error),
            )
            raise error

        delay = _backoff_delay(attempt, base_delay, max_delay)
        log.warning(
            "retrying_after_error",
            function=func.__name__,
            attempt=attempt + 1,
            max_retries=max_retries,
            delay_seconds=delay,
            error=str(error),
        )
        return delay

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                for attempt in range(max_retries + 1):
                    try:
                        return await func(*args, **kwargs)
                    except exceptions as e:
                        await asyncio.sleep(_on_failure(func, attempt, e))

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    time.sleep(_on_failure(func, attempt, e))

        return wrapper

    return decorator
