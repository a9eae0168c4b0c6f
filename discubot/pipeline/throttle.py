"""Process-wide minimum spacing between calls to a rate-limited API."""

import asyncio
import time
from typing import Awaitable, Callable


class RateLimiter:
    """
    Guarantees at least ``min_interval`` seconds between the starts of
    successive calls, across every coroutine sharing the instance.

    Slots are reserved under the lock; the wait happens outside it.
    """

    def __init__(
        self,
        min_interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Block until this caller's slot; returns seconds waited."""
        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            await self._sleep(delay)
        return delay

    async def __aenter__(self) -> "RateLimiter":
        await self.wait()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
