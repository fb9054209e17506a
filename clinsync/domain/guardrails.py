"""Domain Guardrails - Per-Record In-Flight Guard.

No two sync attempts may run against the same record at the same time:
a second attempt would submit the record twice, write two audit entries
and could leave an inconsistent external record id. This module provides
the per-record mutual exclusion the sync engine uses for that.

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - One asyncio.Lock per record id, created on demand and dropped when idle
    - No global lock: attempts on different records never wait on each other
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class RecordLockRegistry:
    """Registry of per-record asyncio locks.

    Locks are created lazily and removed once no task holds or waits on
    them, so the registry does not grow with the number of records ever
    synced. All access happens on the event loop thread.

    Example Usage:
        ```python
        locks = RecordLockRegistry()

        async with locks.hold(record_id):
            ...  # only one task per record id runs here

        if locks.is_locked(record_id):
            ...  # another attempt is in flight
        ```
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    def is_locked(self, record_id: int) -> bool:
        """Check whether an attempt on ``record_id`` is currently in flight."""
        lock = self._locks.get(record_id)
        return lock is not None and lock.locked()

    def in_flight(self) -> list[int]:
        """Return the ids of records with an attempt in flight."""
        return [record_id for record_id, lock in self._locks.items() if lock.locked()]

    @asynccontextmanager
    async def hold(self, record_id: int) -> AsyncIterator[None]:
        """Hold the lock for ``record_id``, waiting for any attempt in flight.

        The lock is released when the block exits, including when the block
        is cancelled or raises, so a timed-out attempt never blocks later ones.

        Parameters:
            record_id: Record store identifier
        """
        lock = self._locks.get(record_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[record_id] = lock
        self._users[record_id] = self._users.get(record_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[record_id] -= 1
            if self._users[record_id] == 0:
                del self._users[record_id]
                del self._locks[record_id]
                logger.debug(f"Released last guard for record {record_id}")
