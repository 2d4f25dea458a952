"""Bounded iteration with an early-exit predicate.

Both the agent retry loop and the direct-dialogue loop have the same shape:
run an attempt, stop early when a predicate holds, and never exceed a fixed
number of attempts. Keeping the termination logic here means neither loop
can run away.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass
class BoundedResult(Generic[T]):
    """Outcome of a bounded loop."""

    value: T | None
    attempts: int
    satisfied: bool
    cancelled: bool = False

    @property
    def exhausted(self) -> bool:
        """Loop ran out of attempts without the predicate holding."""
        return not self.satisfied and not self.cancelled


def bounded_retry(
    attempt: Callable[[int], T],
    until: Callable[[T], bool],
    max_attempts: int,
    *,
    backoff_s: float = 0.0,
    backoff_factor: float = 2.0,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BoundedResult[T]:
    """Run ``attempt`` until ``until(result)`` holds or attempts run out.

    Args:
        attempt: Called with the 1-based attempt number
        until: Predicate on an attempt's result; True stops the loop
        max_attempts: Hard upper bound on attempts (at least 1)
        backoff_s: Delay before the second attempt; 0 disables sleeping
        backoff_factor: Multiplier applied to the delay after each attempt
        cancel_event: Checked before every attempt
        sleep: Sleep function (injectable for tests)

    Returns:
        BoundedResult with the last value and how many attempts ran
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    value: T | None = None
    delay = backoff_s

    for number in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            return BoundedResult(value=value, attempts=number - 1, satisfied=False, cancelled=True)

        value = attempt(number)
        if until(value):
            return BoundedResult(value=value, attempts=number, satisfied=True)

        if number < max_attempts and delay > 0:
            sleep(delay)
            delay *= backoff_factor

    return BoundedResult(value=value, attempts=max_attempts, satisfied=False)
