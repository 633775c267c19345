"""User self-service endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.api.deps import require_actor
from callrouter.database import get_session
from callrouter.models.user import AvailabilityUpdate, User, UserResponse

logger = logging.getLogger("callrouter.users")
router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_me(actor: User = Depends(require_actor)):
    return UserResponse.model_validate(actor)


@router.put("/me/availability", response_model=UserResponse)
async def update_availability(
    data: AvailabilityUpdate,
    actor: User = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
):
    """Opt in or out of being rung; unavailable users are skipped by every ladder step."""
    actor.available = data.available
    await session.commit()
    await session.refresh(actor)
    logger.info(f"User {actor.id} availability set to {data.available}")
    return UserResponse.model_validate(actor)
