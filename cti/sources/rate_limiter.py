"""Minimum-interval rate limiter with a fixed cooldown.

interval = 60000ms / requests_per_minute. When a call arrives inside the
interval the limiter waits ``interval - elapsed + cooldown``; a call after
the interval has passed proceeds immediately, without cooldown.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from cti.core.logger import get_logger

logger = get_logger(__name__)


class RateLimiter:

    def __init__(
        self,
        requests_per_minute: float,
        cooldown_ms: float = 0.0,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self._min_interval_ms = 60000.0 / requests_per_minute
        self._cooldown_ms = max(0.0, cooldown_ms)
        self._name = name
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None   # clock seconds

    @property
    def min_interval_ms(self) -> float:
        return self._min_interval_ms

    async def acquire(self) -> float:
        """Wait until a request may start. Returns the milliseconds waited."""
        waited_ms = 0.0
        if self._last_request is not None:
            elapsed_ms = (self._clock() - self._last_request) * 1000.0
            if elapsed_ms < self._min_interval_ms:
                waited_ms = self._min_interval_ms - elapsed_ms + self._cooldown_ms
                logger.info("rate_limit_wait", source=self._name, wait_ms=round(waited_ms))
                await self._sleep(waited_ms / 1000.0)
        self._last_request = self._clock()
        return waited_ms
