"""
Scoped per-entity locks.

A lock is identified by a namespace and a key, e.g. ``("payment", "INV-...")``
or ``("seller", seller_id)``. Holding it serializes every writer touching the
same entity:

1. An in-process ``asyncio.Lock`` per key, so coroutines of this worker queue
   up without hitting the database.
2. A PostgreSQL transaction-scoped advisory lock, so other workers and the
   cron process are serialized too. It is released when the enclosing
   transaction commits or rolls back.

Locks taken inside one transaction must follow a fixed order:
intent -> payment -> order -> seller, and withdrawal -> seller. Commit
inside the ``hold`` block so the in-process lock outlives the transaction.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class LockManager:
    """Process-wide registry of keyed locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = defaultdict(int)

    @staticmethod
    def lock_key(namespace: str, key: Any) -> str:
        return f"{namespace}:{key}"

    @asynccontextmanager
    async def hold(self, session: AsyncSession, namespace: str, key: Any) -> AsyncIterator[None]:
        """
        Hold the lock for ``namespace:key`` for the duration of the block.

        The session's transaction is rolled back if the block raises, so the
        advisory lock never outlives a failed unit of work.
        """
        lock_key = self.lock_key(namespace, key)
        lock = self._locks.setdefault(lock_key, asyncio.Lock())
        self._holders[lock_key] += 1

        try:
            async with lock:
                try:
                    if session.bind is not None and session.bind.dialect.name == "postgresql":
                        await session.execute(
                            text("SELECT pg_advisory_xact_lock(hashtextextended(:lock_key, 0))"),
                            {"lock_key": lock_key},
                        )
                    yield
                except BaseException:
                    if session.in_transaction():
                        await session.rollback()
                    raise
        finally:
            self._holders[lock_key] -= 1
            if self._holders[lock_key] <= 0:
                self._holders.pop(lock_key, None)
                self._locks.pop(lock_key, None)
