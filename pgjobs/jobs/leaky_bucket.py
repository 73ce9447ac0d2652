"""
Throttling of resource usage, by specifying a target budget of resource time to
be consumed over a rolling window.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, duration: float) -> None: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, duration: float) -> None:
        await asyncio.sleep(duration)


class LeakyBucket:
    """
    Grants ``budget`` seconds of work per ``window`` seconds.

    Call ``refill`` before each throttled operation and run the operation
    through ``observe``. Not safe for concurrent callers: use one bucket per
    task.
    """

    def __init__(self, window: float, budget: float, clock: Clock | None = None):
        if window <= 0 or budget <= 0:
            raise ValueError("window and budget must be positive")

        self.window = window
        self.budget = budget
        self.clock = clock or MonotonicClock()
        self.ratio = budget / window
        self.remaining = 0.0
        self.last_refill: float | None = None

    async def observe(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Await the operation, consuming the time it takes from the bucket.

        This should only be called after the bucket has been refilled. The
        balance may go negative; the next refill repays it.
        """
        start = self.clock.now()
        try:
            return await operation()
        finally:
            self.remaining -= self.clock.now() - start

    async def refill(self) -> None:
        """
        Top up the bucket for the time elapsed since the last refill, sleeping
        until the balance is no longer negative.
        """
        refill_time = self.clock.now()
        since_refill = refill_time - (
            self.last_refill if self.last_refill is not None else refill_time
        )

        self.last_refill = refill_time
        self.remaining = min(self.budget, self.remaining + self.ratio * since_refill)

        # Sleep long enough that the next refill grants enough to bring us back
        # to zero
        if self.remaining < 0.0:
            await self.clock.sleep(-self.remaining / self.ratio)
