"""Reconnect pacing: exponential backoff under a sliding-window budget."""

import asyncio
import random
import time
from collections import deque
from typing import Deque

from structlog import get_logger

logger = get_logger()


class SlidingWindow:
    """Allows at most ``max_events`` within any ``window_size`` seconds."""

    def __init__(self, window_size: float, max_events: int):
        self.window_size = window_size
        self.max_events = max_events
        self.events: Deque[float] = deque()
        self.lock = asyncio.Lock()

    def _cleanup_old_events(self, now: float) -> None:
        """Remove events outside the current window."""
        while self.events and now - self.events[0] >= self.window_size:
            self.events.popleft()

    async def try_acquire(self) -> bool:
        """Try to record an event in the window."""
        async with self.lock:
            now = time.monotonic()
            self._cleanup_old_events(now)

            if len(self.events) < self.max_events:
                self.events.append(now)
                return True

            return False

    def time_until_free(self) -> float:
        """Seconds until the oldest event leaves the window."""
        if len(self.events) < self.max_events:
            return 0.0
        return max(0.0, self.events[0] + self.window_size - time.monotonic())


class ReconnectBackoff:
    """Delay schedule for reconnect attempts."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.1,
        attempts_per_minute: int = 6,
        window_size: float = 60.0,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.window = SlidingWindow(window_size, attempts_per_minute)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the given 1-based attempt."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def wait(self, attempt: int) -> None:
        """Sleep out the backoff, then until the attempt budget has room."""
        await asyncio.sleep(self.delay_for(attempt))
        while not await self.window.try_acquire():
            pause = self.window.time_until_free()
            logger.debug("reconnect_budget_exhausted", attempt=attempt, pause=pause)
            await asyncio.sleep(pause)
