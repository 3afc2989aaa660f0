"""Minimum-interval request throttle for one tracker connection.

Every tracker request awaits :meth:`RequestThrottle.wait` first, so
requests leave at most once per interval no matter how many sessions run
concurrently.  One throttle per connection; no process-wide state.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from autodev.core.constants import TRACKER_THROTTLE_SECONDS


class RequestThrottle:
    """Serialize callers so consecutive requests are *interval* seconds apart.

    Args:
        interval: Minimum spacing between two requests, in seconds.
        clock: Monotonic time source (injectable for tests).
        sleep: Coroutine used to wait (injectable for tests).
    """

    def __init__(
        self,
        interval: float = TRACKER_THROTTLE_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                delay = self._last + self.interval - self._clock()
                if delay > 0:
                    await self._sleep(delay)
            self._last = self._clock()
