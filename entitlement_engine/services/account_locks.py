"""
Per-account lock pool.

Every processor runs its read -> compute -> write -> associate sequence
while holding the lock for the account it mutates, so two events for the
same account never interleave inside one process. Cross-process safety
comes from row-level locks and the durable idempotency records.
"""

import asyncio
from contextlib import asynccontextmanager
from threading import Lock
from typing import Dict


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class AccountLockPool:
    """
    Keyed asyncio locks.

    Entries are reference counted and dropped once no task holds or waits
    on them, so the pool does not grow with the number of accounts seen.
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = Lock()

    def _checkout(self, key: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @asynccontextmanager
    async def hold(self, key: str):
        """Hold the lock for key for the duration of the block."""
        entry = self._checkout(key)
        try:
            async with entry.lock:
                yield
        finally:
            self._checkin(key, entry)

    def is_locked(self, key: str) -> bool:
        with self._registry_lock:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)


_account_locks = AccountLockPool()


def get_account_lock_pool() -> AccountLockPool:
    """Process-wide pool shared by all processor instances."""
    return _account_locks
