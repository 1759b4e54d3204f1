"""
Sliding-window rate limiter for the QuickBooks Accounting API.

Intuit throttles per realm and answers 429 once the budget is spent. We keep a
process-wide window below that limit so that every job, whatever its size,
stays inside it. One limiter instance is shared by all gateway clients.
"""

import asyncio
import logging
import time
from collections import deque
from functools import lru_cache
from typing import Awaitable, Callable

from ledgersync.config import get_settings
from .errors import RateLimitWait

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Allow at most ``max_requests`` calls in any ``window_seconds`` period.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=90, window_seconds=60)

        await limiter.wait_if_needed()
        await do_remote_call()

    A request is never dropped: when the window is full the caller sleeps
    until the oldest timestamp leaves the window and then checks again.
    """

    def __init__(
        self,
        max_requests: int = 90,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps = deque()
        self._lock = asyncio.Lock()
        self.wait_cycles = 0
        self.total_acquired = 0

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def _try_acquire(self) -> None:
        """Record a request slot or raise RateLimitWait with the delay until one frees up."""
        now = self._clock()
        self._prune(now)

        if len(self._timestamps) >= self.max_requests:
            wait_seconds = self._timestamps[0] + self.window_seconds - now
            raise RateLimitWait(max(wait_seconds, 0.0))

        self._timestamps.append(now)
        self.total_acquired += 1

    async def wait_if_needed(self) -> None:
        """Block until a slot in the current window is available, then take it."""
        while True:
            async with self._lock:
                try:
                    self._try_acquire()
                    return
                except RateLimitWait as wait:
                    self.wait_cycles += 1
                    delay = wait.wait_seconds

            logger.info(f"QuickBooks rate limit reached, waiting {delay:.2f}s")
            await self._sleep(delay)

    acquire = wait_if_needed

    @property
    def in_window(self) -> int:
        """Number of requests counted in the current window."""
        self._prune(self._clock())
        return len(self._timestamps)

    async def __aenter__(self):
        await self.wait_if_needed()
        return self

    async def __aexit__(self, *args):
        pass


@lru_cache()
def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Process-wide limiter shared by every gateway instance."""
    settings = get_settings()
    return SlidingWindowRateLimiter(
        max_requests=settings.qbo_rate_limit_max_requests,
        window_seconds=settings.qbo_rate_limit_window_seconds,
    )
