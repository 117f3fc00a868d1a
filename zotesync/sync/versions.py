"""Process-wide version counter shared by every replicated table."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class VersionAllocator:
    """Single source of new version numbers.

    One global version space for all tables. The counter never decreases:
    it only moves forward by allocation or by observing a higher value
    already present in the store.

    The lock is the server's request-level critical section, so a caller can
    keep it held across the store write that consumes a version (``reserve``)
    or across a multi-step section such as backfill (``hold``).
    """

    def __init__(self, initial: int = 0, lock: asyncio.Lock | None = None):
        """Initialize the allocator.

        Args:
            initial: Starting value, normally the store's maximum version.
            lock: Lock guarding the counter. A new one is created if omitted.
        """
        self._value = max(int(initial), 0)
        self._lock = lock or asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def current_version(self) -> int:
        """Snapshot of the counter."""
        async with self._lock:
            return self._value

    async def allocate(self) -> int:
        """Increment the counter and return the new version."""
        async with self._lock:
            return self._next()

    async def advance_to(self, observed: int) -> int:
        """Raise the counter to ``observed`` if that is higher.

        Returns:
            The counter value after the call.
        """
        async with self._lock:
            return self.observe(observed)

    @asynccontextmanager
    async def reserve(self) -> AsyncIterator[int]:
        """Allocate a version and keep the lock until the block exits.

        A version consumed by a failed write is not returned; the resulting
        gap is harmless.
        """
        async with self._lock:
            yield self._next()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator["VersionAllocator"]:
        """Hold the lock for a multi-step section.

        Inside the block use ``peek`` and ``observe``; the async methods would
        deadlock.
        """
        async with self._lock:
            yield self

    def peek(self) -> int:
        """Counter value without locking. Caller must hold the lock."""
        return self._value

    def observe(self, observed: int) -> int:
        """Raise the counter without locking. Caller must hold the lock."""
        if observed > self._value:
            logger.debug(f"Version counter advanced {self._value} -> {observed}")
            self._value = observed
        return self._value

    def _next(self) -> int:
        self._value += 1
        return self._value
