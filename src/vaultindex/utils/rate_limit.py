"""Sliding-window admission control for outbound requests."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque

from vaultindex.config import RateLimitConfig

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Admit at most ``max_requests`` calls within any ``time_window`` seconds."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _cleanup(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.config.time_window:
            self._timestamps.popleft()

    @property
    def in_window(self) -> int:
        self._cleanup(self._clock())
        return len(self._timestamps)

    async def wait_for_slot(self) -> None:
        """Block until a request slot is free, then claim it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._cleanup(now)
                if len(self._timestamps) < self.config.max_requests:
                    self._timestamps.append(now)
                    return
                wait_time = self.config.time_window - (now - self._timestamps[0])
                LOGGER.debug("Rate limit reached, waiting %.3fs for a slot", wait_time)
                await asyncio.sleep(max(wait_time, 0.0))
