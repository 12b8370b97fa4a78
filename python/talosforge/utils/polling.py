"""
talosforge/utils/polling.py

One bounded polling primitive used for every wait in the package: port
reachability, reboots, node readiness, addon readiness and etcd membership.

The predicate is awaited until it returns a truthy value or the deadline passes.
Exceptions raised by the predicate are treated as "not yet" (and remembered for
the timeout message), except for those listed in `fatal`, which propagate
immediately. Cancellation always propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type

from typing_extensions import TypeVar

from talosforge.errors import PollTimeoutError
from talosforge.utils.async_retry import backoff_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Interval:
    """
    Interval strategy for poll_until.

    Args:
        initial: Delay in seconds after the first unsuccessful attempt.
        factor: Growth factor per attempt. 1.0 gives a fixed interval.
        maximum: Cap for any single delay.
    """

    def __init__(
        self, initial: float, factor: float = 1.0, maximum: Optional[float] = None
    ) -> None:
        if initial < 0:
            raise ValueError("interval must be non-negative")
        self.initial = initial
        self.factor = factor
        self.maximum = maximum if maximum is not None else initial

    @classmethod
    def fixed(cls, seconds: float) -> Interval:
        return cls(seconds)

    @classmethod
    def exponential(
        cls, initial: float, maximum: float, factor: float = 2.0
    ) -> Interval:
        return cls(initial, factor=factor, maximum=maximum)

    def delay(self, attempt_number: int) -> float:
        if self.factor == 1.0:
            return self.initial
        return backoff_delay(attempt_number, self.initial, self.factor, self.maximum)


async def poll_until(
    predicate: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout: float,
    interval: Interval,
    description: str,
    fatal: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Repeatedly awaits `predicate` until it returns a truthy value.

    Args:
        predicate: Async callable checking the condition. A falsy result or a
            non-fatal exception means "not yet".
        timeout: Overall deadline in seconds, measured on the loop clock.
        interval: Sleep strategy between attempts.
        description: Human-readable description used in logs and errors.
        fatal: Exception types that abort polling immediately.

    Returns:
        The first truthy value returned by the predicate.

    Raises:
        PollTimeoutError: If the deadline passes first.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Optional[BaseException] = None
    attempt_number = 1

    while True:
        try:
            result = await predicate()
            if result:
                return result
        except fatal:
            raise
        except Exception as exc:
            last_error = exc
            logger.debug("Check for %s failed: %s", description, exc)

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeoutError(description, timeout, last_error)
        await asyncio.sleep(min(interval.delay(attempt_number), remaining))
        attempt_number += 1
