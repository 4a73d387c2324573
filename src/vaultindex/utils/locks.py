"""Process-wide advisory lock guarding the vector store."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from vaultindex.errors import LockTimeoutError

LOGGER = logging.getLogger(__name__)


class StoreLock:
    """Mutex with an acquisition deadline and a maximum hold time.

    A holder that never releases is evicted after ``hold_timeout`` seconds so
    a stuck task cannot block the store forever. Releasing with a stale token
    (after eviction) is a no-op.
    """

    def __init__(self, timeout: float = 5.0, hold_timeout: float | None = None) -> None:
        self.timeout = timeout
        self.hold_timeout = hold_timeout if hold_timeout is not None else timeout
        self._lock = asyncio.Lock()
        self._generation = 0
        self._holder = 0
        self._expiry: asyncio.TimerHandle | None = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self, timeout: float | None = None) -> int:
        """Wait for the lock and return the holder token."""
        timeout = self.timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise LockTimeoutError(
                f"Failed to acquire vector store lock within {timeout:.1f}s"
            ) from None

        self._generation += 1
        self._holder = self._generation
        loop = asyncio.get_running_loop()
        self._expiry = loop.call_later(self.hold_timeout, self._expire, self._holder)
        return self._holder

    def release(self, token: int) -> None:
        if token != self._holder:
            LOGGER.debug("Lock token %d already released", token)
            return
        self._clear()

    def _expire(self, token: int) -> None:
        if token == self._holder:
            LOGGER.warning(
                "Vector store lock held for more than %.1fs, releasing", self.hold_timeout
            )
            self._clear()

    def _clear(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        self._holder = 0
        self._lock.release()

    @asynccontextmanager
    async def hold(self, timeout: float | None = None) -> AsyncIterator[int]:
        token = await self.acquire(timeout)
        try:
            yield token
        finally:
            self.release(token)
