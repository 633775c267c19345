"""Incident API endpoints for technicians and dispatch admins."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from callrouter.api.deps import get_engine, http_error, require_actor, require_admin
from callrouter.models.call_attempt import CallAttemptResponse, DeclineReason
from callrouter.models.incident import (
    CloseRequest,
    IncidentResponse,
    ManualAssignRequest,
    StatusUpdate,
)
from callrouter.models.incident_event import IncidentEventResponse
from callrouter.models.site import SiteResponse
from callrouter.models.user import User, UserResponse
from callrouter.routing.engine import EscalationEngine
from callrouter.routing.errors import RoutingError

router = APIRouter(prefix="/api/incidents", tags=["incidents"])


class DeclineRequest(BaseModel):
    reason: DeclineReason
    reason_text: str | None = Field(default=None, max_length=1000)


class IncidentDetailsResponse(BaseModel):
    incident: IncidentResponse
    call_attempts: list[CallAttemptResponse]
    events: list[IncidentEventResponse]
    assigned_user: UserResponse | None = None
    site: SiteResponse | None = None


@router.get("/open", response_model=list[IncidentResponse])
async def list_open_incidents(
    _admin: User = Depends(require_admin),
    engine: EscalationEngine = Depends(get_engine),
):
    """Every incident not yet resolved, newest first."""
    try:
        incidents = await engine.list_open()
    except RoutingError as exc:
        raise http_error(exc)
    return [IncidentResponse.model_validate(i) for i in incidents]


@router.get("/unclaimed", response_model=list[IncidentResponse])
async def list_unclaimed_incidents(
    _admin: User = Depends(require_admin),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incidents = await engine.list_unclaimed()
    except RoutingError as exc:
        raise http_error(exc)
    return [IncidentResponse.model_validate(i) for i in incidents]


@router.get("/mine", response_model=list[IncidentResponse])
async def list_my_incidents(
    actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incidents = await engine.list_for_user(actor.id)
    except RoutingError as exc:
        raise http_error(exc)
    return [IncidentResponse.model_validate(i) for i in incidents]


@router.get("/{incident_id}", response_model=IncidentDetailsResponse)
async def get_incident(
    incident_id: int,
    _actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        details = await engine.get_incident_details(incident_id)
    except RoutingError as exc:
        raise http_error(exc)

    return IncidentDetailsResponse(
        incident=IncidentResponse.model_validate(details.incident),
        call_attempts=[CallAttemptResponse.model_validate(a) for a in details.call_attempts],
        events=[IncidentEventResponse.model_validate(e) for e in details.events],
        assigned_user=UserResponse.model_validate(details.assigned_user) if details.assigned_user else None,
        site=SiteResponse.model_validate(details.site) if details.site else None,
    )


@router.post("/{incident_id}/accept", response_model=IncidentResponse)
async def accept_incident(
    incident_id: int,
    actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incident = await engine.accept(incident_id, actor.id)
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)


@router.post("/{incident_id}/decline", response_model=IncidentResponse)
async def decline_incident(
    incident_id: int,
    data: DeclineRequest,
    actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    """Turn the incident down; the ladder moves on to the next person."""
    try:
        incident = await engine.decline(incident_id, actor.id, data.reason, data.reason_text)
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)


@router.post("/{incident_id}/status", response_model=IncidentResponse)
async def update_incident_status(
    incident_id: int,
    data: StatusUpdate,
    actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incident = await engine.update_status(incident_id, data.status, actor.id)
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)


@router.post("/{incident_id}/close", response_model=IncidentResponse)
async def close_incident(
    incident_id: int,
    data: CloseRequest,
    actor: User = Depends(require_actor),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incident = await engine.close(
            incident_id,
            data.outcome,
            actor.id,
            outcome_notes=data.outcome_notes,
            follow_up_required=data.follow_up_required,
        )
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)


@router.post("/{incident_id}/assign", response_model=IncidentResponse)
async def assign_incident(
    incident_id: int,
    data: ManualAssignRequest,
    admin: User = Depends(require_admin),
    engine: EscalationEngine = Depends(get_engine),
):
    try:
        incident = await engine.manual_assign(incident_id, data.user_id, admin.id)
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)


@router.post("/{incident_id}/escalate", response_model=IncidentResponse)
async def escalate_incident(
    incident_id: int,
    admin: User = Depends(require_admin),
    engine: EscalationEngine = Depends(get_engine),
):
    """Restart the ladder from the top, re-reading the configured steps."""
    try:
        incident = await engine.manual_escalate(incident_id, admin.id)
    except RoutingError as exc:
        raise http_error(exc)
    return IncidentResponse.model_validate(incident)
