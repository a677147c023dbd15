"""
Rate-Limited Send Queue

Bounded asyncio queue drained by a small worker pool. A shared ticker spaces
job starts at least ``min_interval`` apart across all workers, so provider
rate limits hold no matter how many workers run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

_DONE = object()


@dataclass
class QueueOutcome:
    """Result of one attempted job."""

    index: int
    item: Any
    value: Any = None
    error: BaseException | None = None


class RateLimitedQueue:
    """
    Run an async handler over items with bounded throughput.

    With one worker (the default) items are attempted strictly in order.
    ``stop()`` lets jobs already started finish and skips the rest.
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        workers: int = 1,
        maxsize: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = max(0.0, min_interval)
        self.workers = max(1, workers)
        self.maxsize = max(1, maxsize)
        self._clock = clock
        self._sleep = sleep
        self._gate: asyncio.Lock | None = None
        self._next_start: float | None = None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop taking new jobs."""
        self._stopped = True

    async def _wait_turn(self) -> None:
        async with self._gate:
            now = self._clock()
            start = now if self._next_start is None else max(now, self._next_start)
            if start > now:
                await self._sleep(start - now)
            self._next_start = start + self.min_interval

    async def run(
        self,
        items: list[Any],
        handler: Callable[[Any], Awaitable[Any]],
    ) -> list[QueueOutcome]:
        """
        Process items through the handler.

        Returns:
            Outcomes for attempted items, in item order. Items skipped after
            stop() have no outcome.
        """
        self._stopped = False
        self._next_start = None
        self._gate = asyncio.Lock()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        outcomes: dict[int, QueueOutcome] = {}

        async def produce() -> None:
            for index, item in enumerate(items):
                if self._stopped:
                    break
                await queue.put((index, item))
            for _ in range(self.workers):
                await queue.put(_DONE)

        async def work() -> None:
            while True:
                entry = await queue.get()
                if entry is _DONE:
                    return
                if self._stopped:
                    continue
                await self._wait_turn()
                if self._stopped:
                    continue

                index, item = entry
                try:
                    outcomes[index] = QueueOutcome(index, item, value=await handler(item))
                except Exception as e:
                    logger.exception(f"Queued job {index} failed")
                    outcomes[index] = QueueOutcome(index, item, error=e)

        await asyncio.gather(produce(), *(work() for _ in range(self.workers)))
        return [outcomes[i] for i in sorted(outcomes)]
