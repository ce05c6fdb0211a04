"""
keyed_lock.py — Per-key asyncio locks.

Serializes coroutines that touch the same key (an agent id, an applicant
address) while letting different keys proceed independently. Locks are
dropped once nobody holds or waits on them, so the registry does not grow
with the number of agents ever seen.

Usage:
    locks = KeyedLock()
    async with locks.hold(agent_id):
        ...read-modify-write the agent...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLock:
    """A lazily created asyncio.Lock per key, with reference counting."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
