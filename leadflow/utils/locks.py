"""
In-process keyed locks - serializes work that shares a key (a lead's ledger,
an (automation, lead) run slot) without blocking unrelated keys.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Hashable, Optional

logger = logging.getLogger(__name__)

LOCK_WAIT_SECONDS = 30.0


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


class KeyedLocks:
    """
    One asyncio.Lock per key, created on demand and dropped when idle.

    Usage:
        locks = KeyedLocks("ledger")
        async with locks.hold(lead_id):
            # serialized per lead
    """

    def __init__(self, name: str, wait: float = LOCK_WAIT_SECONDS):
        self.name = name
        self.wait = wait
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable, wait: Optional[float] = None):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=wait or self.wait)
            except asyncio.TimeoutError:
                logger.warning("Lock %s timed out for key %s", self.name, str(key)[:8])
                raise LockTimeoutError(
                    f"Could not acquire {self.name} lock for {str(key)[:8]}*** within {wait or self.wait}s"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
