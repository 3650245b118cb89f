"""Per-subject serialization for state transitions.

Push (webhook) and pull (refresh) reconciliation can run concurrently for
the same account or team; every transition for a subject runs under that
subject's lock. There is no cross-subject locking.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class SubjectLocks:
    """Registry of asyncio locks keyed by subject string."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                # Nobody waiting: drop the lock so the registry stays bounded
                del self._holders[key]
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def team_key(team_id: str) -> str:
    return f"team:{team_id}"


def competition_key(competition_id: str) -> str:
    return f"competition:{competition_id}"
