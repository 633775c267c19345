"""Rotation tracker — spreads rotating-pool calls fairly across incidents."""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.models.rotation import ROTATION_STATE_ID, RotationState
from callrouter.models.schedule import OnCallScheduleEntry
from callrouter.models.user import User

logger = logging.getLogger("callrouter.rotation")

POOL_BATCH_SIZE = 3

# One pointer exists per deployment. The row lock covers other processes;
# the in-process lock keeps coroutines from interleaving on it.
_pointer_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def pointer_lock() -> asyncio.Lock:
    """The lock guarding the rotation pointer for the running event loop."""
    loop = asyncio.get_running_loop()
    lock = _pointer_locks.get(loop)
    if lock is None:
        lock = _pointer_locks[loop] = asyncio.Lock()
    return lock


class RotationTracker:
    """Hands out up to three pool members per call from a persistent pointer.

    The pointer always advances by ``POOL_BATCH_SIZE`` regardless of how
    many of the returned users the engine actually rings, and it is never
    reset between incidents.
    """

    def __init__(self, session: AsyncSession, lock: AbstractAsyncContextManager | None = None) -> None:
        """``lock`` replaces the pointer lock when the caller already holds it."""
        self.session = session
        self._lock = lock

    async def eligible_pool(self, at: datetime) -> list[int]:
        """Pool-eligible users on shift at ``at``, in stable user-id order."""
        result = await self.session.execute(
            select(OnCallScheduleEntry.user_id)
            .join(User, User.id == OnCallScheduleEntry.user_id)
            .where(
                OnCallScheduleEntry.eligible_pool.is_(True),
                OnCallScheduleEntry.start_time <= at,
                OnCallScheduleEntry.end_time > at,
                User.active.is_(True),
                User.available.is_(True),
                User.phone.isnot(None),
            )
            .distinct()
            .order_by(OnCallScheduleEntry.user_id)
        )
        return [int(user_id) for user_id in result.scalars().all()]

    async def _load_state(self) -> RotationState:
        result = await self.session.execute(
            select(RotationState)
            .where(RotationState.id == ROTATION_STATE_ID)
            .with_for_update()
        )
        state = result.scalar_one_or_none()
        if state is None:
            state = RotationState(id=ROTATION_STATE_ID, pointer_index=0, last_used_user_ids=[])
            self.session.add(state)
            await self.session.flush()
        return state

    async def next_from_pool(self, excluded_user_ids: Iterable[int], at: datetime) -> list[int]:
        excluded = set(excluded_user_ids)
        available = [user_id for user_id in await self.eligible_pool(at) if user_id not in excluded]
        if not available:
            logger.info("Rotating pool has no available users; pointer unchanged")
            return []

        async with self._lock if self._lock is not None else pointer_lock():
            state = await self._load_state()
            pointer = state.pointer_index or 0
            count = len(available)

            batch: list[int] = []
            for offset in range(min(POOL_BATCH_SIZE, count)):
                batch.append(available[(pointer + offset) % count])

            state.pointer_index = (pointer + POOL_BATCH_SIZE) % count
            state.last_used_user_ids = batch
            await self.session.flush()

        logger.info(
            f"Rotating pool dispatch {batch} (pointer {pointer} -> {state.pointer_index}, pool size {count})"
        )
        return batch
