"""
Per-session mutual exclusion for memory commits.

Commits for the same (user, session) pair run strictly one at a time in
arrival order; different pairs never wait on each other. Lock entries are
dropped as soon as nobody holds or waits on them, so the table does not grow
with the number of sessions ever seen.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

from .store import create_memory_key


class SessionLockTable:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._max_wait_ms = 0

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        # Runs without an await, so lookup and refcount are atomic on the loop.
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        return lock

    def _release_entry(self, key: str, lock: asyncio.Lock) -> None:
        # A reset may have replaced the entry; never touch a newer one.
        if self._locks.get(key) is not lock:
            return
        remaining = self._holders.get(key, 1) - 1
        if remaining <= 0:
            self._holders.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._holders[key] = remaining

    @asynccontextmanager
    async def hold(self, session_id: str, user_id: str) -> AsyncIterator[None]:
        key = create_memory_key(session_id, user_id)
        lock = self._acquire_entry(key)
        wait_start = time.monotonic()
        try:
            async with lock:
                waited_ms = int((time.monotonic() - wait_start) * 1000)
                self._max_wait_ms = max(self._max_wait_ms, waited_ms)
                yield
        finally:
            self._release_entry(key, lock)

    async def run(
        self,
        session_id: str,
        user_id: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        async with self.hold(session_id, user_id):
            return await task()

    def active_locks(self) -> int:
        return len(self._locks)

    def status(self) -> Dict[str, Any]:
        return {
            "active_locks": len(self._locks),
            "waiting": sum(max(0, count - 1) for count in self._holders.values()),
            "max_wait_ms": self._max_wait_ms,
        }

    def reset(self) -> None:
        self._locks.clear()
        self._holders.clear()
        self._max_wait_ms = 0
