"""
Per-change write serialization and atomic writes.

Mutations of one change (field updates, transitions, votes, schedule
writes, links) run one at a time. Different changes never contend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
from uuid import UUID

from .errors import ChangeBusy, StorageUnavailable

logger = logging.getLogger(__name__)


class ChangeLockRegistry:
    """
    Hands out one asyncio.Lock per change id.

    Locks are dropped once nobody holds or waits for them.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._users: Dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, change_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(change_id, asyncio.Lock())
        self._users[change_id] = self._users.get(change_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self.timeout)
            except asyncio.TimeoutError:
                raise ChangeBusy(
                    f"Change {change_id} is being modified by another request.",
                    condition="lock_timeout"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[change_id] -= 1
            if not self._users[change_id]:
                del self._users[change_id]
                self._locks.pop(change_id, None)

    def is_locked(self, change_id: UUID) -> bool:
        lock = self._locks.get(change_id)
        return lock is not None and lock.locked()


@asynccontextmanager
async def atomic_write(store, description: str, change_id: UUID) -> AsyncIterator[None]:
    """
    Run a mutation and its history entries in one storage transaction.

    A failure inside rolls every staged write back and is logged before
    it propagates.
    """
    try:
        async with store.transaction():
            yield
    except StorageUnavailable:
        logger.error(
            "%s on change %s rolled back: storage unavailable", description, change_id
        )
        raise
