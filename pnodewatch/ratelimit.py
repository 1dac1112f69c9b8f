"""Minimum-interval scheduler for rate-limited upstream APIs.

Serializes calls (concurrency 1) and spaces their start times at least
``min_interval`` seconds apart.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MinIntervalScheduler:
    """Global scheduler for one shared upstream quota.

    Args:
        min_interval: Minimum seconds between the starts of two calls.
        clock: Monotonic clock, injectable for tests.
        sleep: Coroutine used to wait, injectable for tests.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None
        self.calls = 0

    @classmethod
    def per_minute(cls, requests_per_minute: int, **kwargs) -> "MinIntervalScheduler":
        """Build a scheduler allowing at most *requests_per_minute* starts."""
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        return cls(60.0 / requests_per_minute, **kwargs)

    def time_until_slot(self) -> float:
        """Seconds until the next call may start."""
        if self._last_start is None:
            return 0.0
        elapsed = self._clock() - self._last_start
        return max(0.0, self.min_interval - elapsed)

    async def run(self, func: Callable[[], Awaitable[T]]) -> T:
        """Wait for a slot, then await ``func()`` while holding the scheduler.

        Args:
            func: Zero-argument coroutine function performing the call.

        Returns:
            Whatever ``func()`` returns.
        """
        async with self._lock:
            wait = self.time_until_slot()
            if wait > 0:
                logger.debug("Rate limit: waiting %.2fs for next slot", wait)
                await self._sleep(wait)
            self._last_start = self._clock()
            self.calls += 1
            return await func()
