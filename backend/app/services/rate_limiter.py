"""
Outbound Rate Limiter

Serializes Square API calls to one per interval. Callers queue up in FIFO order
and a single dispatcher task releases them one at a time.
"""
from collections import deque
from typing import Deque, Optional
import asyncio
import logging

from app.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """FIFO throttle with a minimum spacing between released callers"""

    def __init__(self, interval_ms: Optional[int] = None):
        interval_ms = interval_ms if interval_ms is not None else settings.SQUARE_RATE_LIMIT_INTERVAL_MS
        self.interval = interval_ms / 1000
        self._queue: Deque[asyncio.Future] = deque()
        self._processing = False
        self._dispatcher: Optional[asyncio.Task] = None
        self._last_release: Optional[float] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def throttle(self) -> None:
        """Wait until it is safe to issue one Square API call"""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._queue.append(waiter)

        if not self._processing:
            self._processing = True
            self._dispatcher = loop.create_task(self._process_queue())

        await waiter

    async def _process_queue(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._queue:
                if self._last_release is not None:
                    remaining = self._last_release + self.interval - loop.time()
                    if remaining > 0:
                        await asyncio.sleep(remaining)

                waiter = self._queue.popleft()
                if waiter.done():
                    # Caller went away while queued
                    continue

                self._last_release = loop.time()
                waiter.set_result(None)
                # Let the released caller run before the next one is considered
                await asyncio.sleep(0)
        finally:
            if self._dispatcher is asyncio.current_task():
                self._processing = False
                self._dispatcher = None

    def reset(self) -> None:
        """Drop queued callers and forget the last release time"""
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.cancel()
        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
        self._dispatcher = None
        self._processing = False
        self._last_release = None


class NoopRateLimiter(RateLimiter):
    """Releases every caller immediately"""

    def __init__(self):
        super().__init__(interval_ms=0)
        self.calls = 0

    async def throttle(self) -> None:
        self.calls += 1

    def reset(self) -> None:
        self.calls = 0
