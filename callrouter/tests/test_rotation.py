"""Tests for the rotating pool pointer."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from callrouter.models.rotation import RotationState
from callrouter.models.user import UserRole
from callrouter.routing.rotation import RotationTracker, pointer_lock


async def _pool(seed, size: int):
    users = []
    for index in range(size):
        user = await seed.user(f"Pool{index}")
        await seed.shift(user, pool=True)
        users.append(user.id)
    return users


@pytest.mark.asyncio
async def test_batches_of_three_wrap_around(seed, session_factory, clock):
    pool = await _pool(seed, 5)

    async with session_factory() as session:
        tracker = RotationTracker(session)
        first = await tracker.next_from_pool([], clock())
        second = await tracker.next_from_pool([], clock())
        await session.commit()

    assert first == [pool[0], pool[1], pool[2]]
    assert second == [pool[3], pool[4], pool[0]]

    async with session_factory() as session:
        state = (await session.execute(select(RotationState))).scalar_one()
    assert state.pointer_index == 1
    assert state.last_used_user_ids == second


@pytest.mark.asyncio
async def test_pointer_persists_across_sessions(seed, session_factory, clock):
    pool = await _pool(seed, 4)

    async with session_factory() as session:
        assert await RotationTracker(session).next_from_pool([], clock()) == pool[:3]
        await session.commit()

    async with session_factory() as session:
        assert await RotationTracker(session).next_from_pool([], clock()) == [pool[3], pool[0], pool[1]]
        await session.commit()


@pytest.mark.asyncio
async def test_small_pool_has_no_duplicates(seed, db_session, clock):
    pool = await _pool(seed, 2)

    assert await RotationTracker(db_session).next_from_pool([], clock()) == pool


@pytest.mark.asyncio
async def test_excluded_users_are_removed_before_rotation(seed, db_session, clock):
    pool = await _pool(seed, 4)

    batch = await RotationTracker(db_session).next_from_pool([pool[0]], clock())

    assert batch == [pool[1], pool[2], pool[3]]


@pytest.mark.asyncio
async def test_empty_pool_leaves_pointer_untouched(seed, db_session, clock):
    await seed.user("Ada", UserRole.ADMIN)

    assert await RotationTracker(db_session).next_from_pool([], clock()) == []
    assert (await db_session.execute(select(RotationState))).scalar_one_or_none() is None


@pytest.mark.asyncio
async def test_engine_rings_whole_pool_batch(engine, seed, gateway):
    pool = await _pool(seed, 4)
    await seed.ladder(["rotating_pool"])

    incident_id = await engine.on_incoming_call("+15557654321")

    assert gateway.rung_user_ids == pool[:3]
    for user_id in pool[:3]:
        await engine.on_call_terminal_result(incident_id, user_id, "missed")

    # The step is re-resolved with the first batch excluded before moving on.
    assert gateway.rung_user_ids[3:] == [pool[3]]


@pytest.mark.asyncio
async def test_tracker_and_engine_share_one_pointer_lock(seed, db_session, clock):
    pool = await _pool(seed, 3)
    lock = pointer_lock()
    await lock.acquire()

    pending = asyncio.create_task(RotationTracker(db_session).next_from_pool([], clock()))
    await asyncio.sleep(0.05)
    assert not pending.done()

    lock.release()
    assert await pending == pool
    assert pointer_lock() is lock
