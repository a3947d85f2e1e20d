"""Outbound request throttling for the Halaxy API.

Halaxy enforces a per-minute request ceiling per API client.  The default
``SlidingWindowRateLimiter`` counts requests within a fixed window and, once
the ceiling is passed, makes the caller sleep until the window elapses.

The counter is process-local.  Two worker processes sharing the same API
credentials each get the full budget, so the limiter is advisory only.  A
shared-store implementation can be swapped in through the ``RateLimiter``
protocol without touching the client.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger("bloom.halaxy.rate_limiter")


class RateLimiter(Protocol):
    async def acquire(self) -> None:
        """Wait, if necessary, until one more request may be sent."""
        ...


class SlidingWindowRateLimiter:
    """Window counter that sleeps the caller once the ceiling is exceeded.

    Usage::

        limiter = SlidingWindowRateLimiter(max_requests=60)
        await limiter.acquire()
        response = await http.get(url)
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the limiter.

        Args:
            max_requests:   Requests allowed per window.
            window_seconds: Window length in seconds.
            clock:          Monotonic time source (injectable for tests).
            sleep:          Async sleep function (injectable for tests).
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._count = 0
        self._window_start = clock()
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return self._count

    async def acquire(self) -> None:
        """Admit one request, sleeping out the window once the ceiling is passed.

        Callers are admitted one at a time; a waiter holds the lock while it
        sleeps, so requests queued behind it are counted against the new window.
        """
        async with self._lock:
            now = self._clock()
            elapsed = now - self._window_start
            if elapsed > self.window_seconds:
                self._count = 0
                self._window_start = now

            self._count += 1
            if self._count <= self.max_requests:
                return

            wait = self.window_seconds - (now - self._window_start)
            if wait > 0:
                logger.warning(
                    "Halaxy rate limit reached (%d/%ds), waiting %.2fs",
                    self.max_requests,
                    self.window_seconds,
                    wait,
                )
                await self._sleep(wait)
            self._count = 1
            self._window_start = self._clock()
