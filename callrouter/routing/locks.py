"""Per-incident critical sections."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class IncidentLocks:
    """Hands out one ``asyncio.Lock`` per incident id.

    Locks are reference-counted and dropped once nobody holds or waits on
    them, so the registry does not grow with the incident table.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, incident_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(incident_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[incident_id] = lock
        self._users[incident_id] = self._users.get(incident_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[incident_id] - 1
            if remaining:
                self._users[incident_id] = remaining
            else:
                del self._users[incident_id]
                del self._locks[incident_id]

    def __len__(self) -> int:
        return len(self._locks)
