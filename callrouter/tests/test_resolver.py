"""Tests for step resolution against the on-call schedule."""

from __future__ import annotations

from datetime import timedelta

import pytest

from callrouter.models.user import UserRole
from callrouter.routing.resolver import ScheduleResolver
from callrouter.routing.steps import LadderStep


@pytest.mark.asyncio
async def test_primary_returns_single_highest_priority_user(seed, db_session, clock):
    backup = await seed.user("Bea")
    lead = await seed.user("Lee")
    await seed.shift(backup, primary=True, priority=2)
    await seed.shift(lead, primary=True, priority=1)

    resolver = ScheduleResolver(db_session)

    assert await resolver.resolve(LadderStep.PRIMARY_ONCALL, clock()) == [lead.id]
    assert await resolver.resolve(LadderStep.PRIMARY_ONCALL, clock(), [lead.id]) == [backup.id]


@pytest.mark.asyncio
async def test_schedule_window_is_half_open(seed, db_session, clock):
    tech = await seed.user("Tia")
    now = clock()
    await seed.shift(tech, secondary=True, start=now, end=now + timedelta(hours=1))

    resolver = ScheduleResolver(db_session)

    assert await resolver.resolve(LadderStep.SECONDARY, now) == [tech.id]
    assert await resolver.resolve(LadderStep.SECONDARY, now - timedelta(seconds=1)) == []
    assert await resolver.resolve(LadderStep.SECONDARY, now + timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_unreachable_users_are_skipped(seed, db_session, clock):
    away = await seed.user("Ari", available=False)
    gone = await seed.user("Gus", active=False)
    no_phone = await seed.user("Nia", phone=None)
    ready = await seed.user("Rey")
    for priority, user in enumerate((away, gone, no_phone, ready), start=1):
        await seed.shift(user, primary=True, priority=priority)

    resolver = ScheduleResolver(db_session)

    assert await resolver.resolve(LadderStep.PRIMARY_ONCALL, clock()) == [ready.id]


@pytest.mark.asyncio
async def test_role_steps(seed, db_session, clock):
    tech = await seed.user("Tom")
    admin_one = await seed.user("Ada", UserRole.ADMIN)
    admin_two = await seed.user("Abe", UserRole.ADMIN)
    manager_one = await seed.user("Max", UserRole.MANAGER)
    manager_two = await seed.user("Mia", UserRole.MANAGER)

    resolver = ScheduleResolver(db_session)
    now = clock()

    assert await resolver.resolve(LadderStep.ADMIN, now) == [admin_one.id]
    assert await resolver.resolve(LadderStep.ADMIN, now, [admin_one.id]) == [admin_two.id]
    assert await resolver.resolve(LadderStep.MANAGER, now) == [manager_one.id, manager_two.id]
    assert await resolver.resolve(LadderStep.BROADCAST, now, [admin_two.id]) == [
        admin_one.id,
        manager_one.id,
        manager_two.id,
    ]
    assert tech.id not in await resolver.resolve(LadderStep.BROADCAST, now)


@pytest.mark.asyncio
async def test_unknown_step_resolves_to_nobody(seed, db_session, clock):
    await seed.user("Ada", UserRole.ADMIN)

    resolver = ScheduleResolver(db_session)

    assert await resolver.resolve(LadderStep.parse("pager_duty"), clock()) == []


def test_step_parsing():
    assert LadderStep.parse("Primary_OnCall ") is LadderStep.PRIMARY_ONCALL
    assert LadderStep.parse("nonsense") is LadderStep.UNKNOWN
    assert LadderStep.parse("") is LadderStep.UNKNOWN
    assert LadderStep.BROADCAST.fans_out
    assert LadderStep.ROTATING_POOL.fans_out
    assert not LadderStep.MANAGER.fans_out
