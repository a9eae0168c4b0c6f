"""Tests for the shared rate limiter."""

import asyncio

import pytest

from discubot.pipeline.throttle import RateLimiter


class FakeTime:
    """Clock and sleep that share a virtual timeline."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        t = FakeTime()
        limiter = RateLimiter(0.5, clock=t.clock, sleep=t.sleep)
        assert await limiter.wait() == 0
        assert t.sleeps == []

    @pytest.mark.asyncio
    async def test_back_to_back_calls_are_spaced(self):
        t = FakeTime()
        limiter = RateLimiter(0.5, clock=t.clock, sleep=t.sleep)
        for _ in range(3):
            await limiter.wait()
        assert t.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_no_wait_after_interval_elapsed(self):
        t = FakeTime()
        limiter = RateLimiter(0.5, clock=t.clock, sleep=t.sleep)
        await limiter.wait()
        t.now = 2.0
        assert await limiter.wait() == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_distinct_slots(self):
        t = FakeTime()
        limiter = RateLimiter(0.2, clock=t.clock, sleep=t.sleep)
        delays = await asyncio.gather(*(limiter.wait() for _ in range(4)))
        assert sorted(round(d, 6) for d in delays) == [0.0, 0.2, 0.4, 0.6]

    @pytest.mark.asyncio
    async def test_context_manager(self):
        t = FakeTime()
        limiter = RateLimiter(1.0, clock=t.clock, sleep=t.sleep)
        async with limiter:
            pass
        async with limiter:
            pass
        assert t.sleeps == [1.0]
