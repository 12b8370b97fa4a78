"""
talosforge/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with an optional bounded exponential backoff between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt_number: int, delay: float, backoff: float, max_delay: float
) -> float:
    """
    Delay to wait after the given (1-based) failed attempt.

    With backoff=1.0 the delay is fixed; otherwise it grows geometrically and
    is capped at max_delay.
    """
    return min(delay * (backoff ** (attempt_number - 1)), max_delay)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. Only
    exceptions matching `retry_on` are retried; anything else propagates on the
    first occurrence. Cancellation is never retried.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds after the first failure. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
        backoff (float, optional):
            Multiplier applied to the delay after each failure. 1.0 keeps it fixed.
        max_delay (float, optional):
            Upper bound for any single delay. Defaults to 30.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Defaults to (Exception,).

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on the selected exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number >= retries:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %r",
                                retries,
                                func.__qualname__,
                            )
                        raise
                    await asyncio.sleep(
                        backoff_delay(attempt_number, delay, backoff, max_delay)
                    )
                    attempt_number += 1

        wrapper.__qualname__ = func.__qualname__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
