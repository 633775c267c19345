"""Cancellable per-incident deferred actions (the answered-unclaimed window)."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("callrouter.timers")


class ClaimTimers:
    """At most one pending timer per incident; re-arming replaces the old one."""

    def __init__(self) -> None:
        self._tasks: dict[int, asyncio.Task] = {}

    def arm(
        self,
        incident_id: int,
        delay_seconds: float,
        action: Callable[[int], Awaitable[None]],
    ) -> None:
        self.cancel(incident_id)
        self._tasks[incident_id] = asyncio.create_task(
            self._run(incident_id, delay_seconds, action),
            name=f"claim-timer-{incident_id}",
        )

    async def _run(
        self,
        incident_id: int,
        delay_seconds: float,
        action: Callable[[int], Awaitable[None]],
    ) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            # Drop the handle first so the action cannot cancel its own task.
            if self._tasks.get(incident_id) is asyncio.current_task():
                del self._tasks[incident_id]
            await action(incident_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Claim timer for incident {incident_id} failed")

    def cancel(self, incident_id: int) -> bool:
        task = self._tasks.pop(incident_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, incident_id: int) -> bool:
        task = self._tasks.get(incident_id)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
