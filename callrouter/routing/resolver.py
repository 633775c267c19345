"""Turns a ladder step into the people to ring."""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Iterable

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.models.schedule import OnCallScheduleEntry
from callrouter.models.user import User, UserRole
from callrouter.routing.rotation import RotationTracker
from callrouter.routing.steps import LadderStep

logger = logging.getLogger("callrouter.resolver")


def _reachable(query: Select) -> Select:
    """Restrict a user query to accounts that can actually be rung."""
    return query.where(
        User.active.is_(True),
        User.available.is_(True),
        User.phone.isnot(None),
    )


class ScheduleResolver:
    """Resolves candidate user ids for a step at a point in time.

    Users in ``excluded_user_ids`` are never returned, including for the
    single-person on-call steps.
    """

    def __init__(self, session: AsyncSession, rotation_lock: AbstractAsyncContextManager | None = None) -> None:
        self.session = session
        self.rotation = RotationTracker(session, lock=rotation_lock)

    async def resolve(
        self,
        step: LadderStep,
        at: datetime,
        excluded_user_ids: Iterable[int] = (),
    ) -> list[int]:
        excluded = set(excluded_user_ids)

        if step is LadderStep.PRIMARY_ONCALL:
            candidates = await self._on_call(OnCallScheduleEntry.is_primary, at, excluded)
        elif step is LadderStep.SECONDARY:
            candidates = await self._on_call(OnCallScheduleEntry.is_secondary, at, excluded)
        elif step is LadderStep.ADMIN:
            candidates = (await self._by_roles([UserRole.ADMIN], excluded))[:1]
        elif step is LadderStep.MANAGER:
            candidates = await self._by_roles([UserRole.MANAGER], excluded)
        elif step is LadderStep.BROADCAST:
            candidates = await self._by_roles([UserRole.ADMIN, UserRole.MANAGER], excluded)
        elif step is LadderStep.ROTATING_POOL:
            candidates = await self.rotation.next_from_pool(excluded, at)
        else:
            candidates = []

        logger.debug(f"Step {step.value} resolved to {candidates}")
        return candidates

    async def _on_call(self, role_flag, at: datetime, excluded: set[int]) -> list[int]:
        query = _reachable(
            select(OnCallScheduleEntry.user_id)
            .join(User, User.id == OnCallScheduleEntry.user_id)
            .where(
                role_flag.is_(True),
                OnCallScheduleEntry.start_time <= at,
                OnCallScheduleEntry.end_time > at,
            )
        ).order_by(OnCallScheduleEntry.priority_order, OnCallScheduleEntry.id)
        if excluded:
            query = query.where(OnCallScheduleEntry.user_id.notin_(excluded))

        result = await self.session.execute(query.limit(1))
        user_id = result.scalar_one_or_none()
        return [int(user_id)] if user_id is not None else []

    async def _by_roles(self, roles: list[UserRole], excluded: set[int]) -> list[int]:
        query = _reachable(
            select(User.id).where(User.role.in_([role.value for role in roles]))
        ).order_by(User.id)
        if excluded:
            query = query.where(User.id.notin_(excluded))

        result = await self.session.execute(query)
        return [int(user_id) for user_id in result.scalars().all()]
