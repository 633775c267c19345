"""Routing configuration API: business hours, ring duration and ladders."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.api.deps import require_actor, require_admin
from callrouter.database import get_session
from callrouter.models.user import User
from callrouter.routing.config_store import BusinessHoursWindow, ConfigStore, LadderConfig, RingDuration
from callrouter.routing.steps import KNOWN_STEPS

logger = logging.getLogger("callrouter.config_api")
router = APIRouter(prefix="/api/config", tags=["config"])


def _check_ladder(data: LadderConfig) -> list[str]:
    if not data.steps:
        raise HTTPException(status_code=422, detail="Ladder must contain at least one step")
    unknown = [step for step in data.steps if step.lower() not in KNOWN_STEPS]
    if unknown:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown ladder steps: {', '.join(unknown)}. Known steps: {', '.join(KNOWN_STEPS)}",
        )
    return [step.lower() for step in data.steps]


@router.get("/business-hours", response_model=BusinessHoursWindow | None)
async def get_business_hours(
    _actor: User = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
):
    """Configured window, or null when every call is treated as business hours."""
    return await ConfigStore(session).get_business_hours()


@router.put("/business-hours", response_model=BusinessHoursWindow)
async def update_business_hours(
    data: BusinessHoursWindow,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    window = await ConfigStore(session).set_business_hours(data)
    await session.commit()
    logger.info(f"Business hours updated by user {admin.id}")
    return window


@router.get("/ring-duration", response_model=RingDuration)
async def get_ring_duration(
    _actor: User = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
):
    return RingDuration(seconds=await ConfigStore(session).get_ring_duration())


@router.put("/ring-duration", response_model=RingDuration)
async def update_ring_duration(
    data: RingDuration,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    seconds = await ConfigStore(session).set_ring_duration(data.seconds)
    await session.commit()
    logger.info(f"Ring duration set to {seconds}s by user {admin.id}")
    return RingDuration(seconds=seconds)


@router.get("/ladders/business-hours", response_model=LadderConfig)
async def get_business_hours_ladder(
    _actor: User = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
):
    return LadderConfig(steps=await ConfigStore(session).get_ladder(True))


@router.put("/ladders/business-hours", response_model=LadderConfig)
async def update_business_hours_ladder(
    data: LadderConfig,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    steps = await ConfigStore(session).set_ladder(True, _check_ladder(data))
    await session.commit()
    logger.info(f"Business-hours ladder set to {steps} by user {admin.id}")
    return LadderConfig(steps=steps)


@router.get("/ladders/after-hours", response_model=LadderConfig)
async def get_after_hours_ladder(
    _actor: User = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
):
    return LadderConfig(steps=await ConfigStore(session).get_ladder(False))


@router.put("/ladders/after-hours", response_model=LadderConfig)
async def update_after_hours_ladder(
    data: LadderConfig,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    steps = await ConfigStore(session).set_ladder(False, _check_ladder(data))
    await session.commit()
    logger.info(f"After-hours ladder set to {steps} by user {admin.id}")
    return LadderConfig(steps=steps)
