"""
Tests for the rate-limited send queue.
"""

import asyncio

from engagement_engine.service.rate_limit import RateLimitedQueue


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class TestRateLimitedQueue:
    """Tests for RateLimitedQueue."""

    def test_items_attempted_in_order(self):
        """Test one worker handles items in the order given."""
        seen = []

        async def handler(item):
            seen.append(item)
            return item * 10

        queue = RateLimitedQueue(min_interval=0)
        outcomes = asyncio.run(queue.run([1, 2, 3, 4], handler))

        assert seen == [1, 2, 3, 4]
        assert [o.value for o in outcomes] == [10, 20, 30, 40]
        assert [o.index for o in outcomes] == [0, 1, 2, 3]

    def test_starts_are_spaced(self):
        """Test job starts are at least min_interval apart."""
        clock = FakeClock()
        starts = []

        async def handler(item):
            starts.append(clock.now)

        queue = RateLimitedQueue(min_interval=0.1, clock=clock, sleep=clock.sleep)
        asyncio.run(queue.run(["a", "b", "c"], handler))

        assert len(starts) == 3
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.1 - 1e-9 for gap in gaps)

    def test_spacing_holds_across_workers(self):
        """Test the shared ticker spaces starts even with several workers."""
        clock = FakeClock()
        starts = []

        async def handler(item):
            starts.append(clock.now)
            await asyncio.sleep(0)

        queue = RateLimitedQueue(min_interval=0.5, workers=3, clock=clock, sleep=clock.sleep)
        asyncio.run(queue.run(list(range(6)), handler))

        starts.sort()
        assert len(starts) == 6
        assert all(b - a >= 0.5 - 1e-9 for a, b in zip(starts, starts[1:]))

    def test_handler_error_is_captured(self):
        """Test a raising job does not abort the rest."""

        async def handler(item):
            if item == 2:
                raise RuntimeError("bad item")
            return item

        queue = RateLimitedQueue(min_interval=0)
        outcomes = asyncio.run(queue.run([1, 2, 3], handler))

        assert len(outcomes) == 3
        assert outcomes[1].error is not None
        assert str(outcomes[1].error) == "bad item"
        assert outcomes[2].value == 3

    def test_stop_skips_remaining(self):
        """Test stop() lets the current job finish and skips the rest."""
        queue = RateLimitedQueue(min_interval=0, maxsize=2)
        seen = []

        async def handler(item):
            seen.append(item)
            if item == 2:
                queue.stop()
            return item

        outcomes = asyncio.run(queue.run([1, 2, 3, 4, 5], handler))

        assert seen == [1, 2]
        assert [o.item for o in outcomes] == [1, 2]
        assert queue.stopped is True
