"""Shared FastAPI dependencies: actor identity, role checks, engine access."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.database import get_session
from callrouter.models.user import User, UserRole
from callrouter.routing.engine import EscalationEngine
from callrouter.routing.errors import InvalidTransition, NotFound, RoutingError, StorageUnavailable

ACTOR_HEADER = "x-actor-id"


def get_engine(request: Request) -> EscalationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Escalation engine is not running")
    return engine


async def require_actor(
    x_actor_id: str | None = Header(None, alias=ACTOR_HEADER),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the already-authenticated caller from the actor header."""
    if not x_actor_id or not x_actor_id.strip().isdigit():
        raise HTTPException(status_code=401, detail="Missing or invalid actor header")

    result = await session.execute(select(User).where(User.id == int(x_actor_id.strip())))
    user = result.scalar_one_or_none()
    if user is None or not user.active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user


async def require_admin(actor: User = Depends(require_actor)) -> User:
    if actor.role != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def http_error(exc: RoutingError) -> HTTPException:
    """Translate an engine error into the HTTP status clients should see."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageUnavailable):
        return HTTPException(status_code=503, detail="Storage unavailable, retry shortly")
    return HTTPException(status_code=400, detail=str(exc))
