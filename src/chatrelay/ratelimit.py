"""Global spacing between outbound dispatches."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from chatrelay.session import Sleep


class RateLimiter:
    """Keep at least `delay` seconds between consecutive dispatch starts."""

    def __init__(
        self,
        delay: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.delay = delay
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.last_dispatch: float | None = None

    async def wait_if_needed(self) -> None:
        async with self._lock:
            last = self.last_dispatch
            if last is not None:
                remaining = self.delay - (self._clock() - last)
                if remaining > 0:
                    logger.info("ratelimit.wait seconds={:.3f}", remaining)
                # Timers may wake marginally early; re-check against the clock.
                while remaining > 0:
                    await self._sleep(remaining)
                    remaining = self.delay - (self._clock() - last)
            self.last_dispatch = self._clock()

    def set_delay(self, delay: float) -> None:
        self.delay = delay
