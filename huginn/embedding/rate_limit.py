"""
Huginn Rate Limiter
-------------------
Process-wide token bucket sized to the embedding provider's
requests-per-minute budget.

Capacity is the burst size; tokens refill continuously at rpm/60 per second.
Callers queue (FIFO, via the asyncio lock) rather than fail, unless waiting
would pass their deadline, in which case DeadlineExceeded is raised without
consuming a token.
"""

import asyncio
import time
import logging
from typing import Awaitable, Callable, Optional

from huginn.core.errors import DeadlineExceeded

logger = logging.getLogger("Huginn.RateLimit")


class TokenBucket:
    def __init__(
        self,
        rate_per_minute: int,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.capacity = float(burst)
        self.refill_per_second = rate_per_minute / 60.0
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()
        self.waits = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, deadline: Optional[float] = None) -> None:
        """
        Take one token, waiting for a refill if needed.

        `deadline` is an absolute time on this bucket's clock.
        """
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait = (1.0 - self._tokens) / self.refill_per_second
                if deadline is not None and self._clock() + wait > deadline:
                    raise DeadlineExceeded(
                        f"rate limit wait of {wait:.2f}s would pass the deadline"
                    )
                self.waits += 1
                logger.debug("Rate limited; waiting %.2fs for a token", wait)
                await self._sleep(wait)
