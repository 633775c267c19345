"""Webhooks the telephony gateway calls to report call progress."""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, model_validator

from callrouter.api.deps import get_engine, http_error
from callrouter.config import settings
from callrouter.models.call_attempt import AttemptResult, DeclineReason
from callrouter.routing.engine import EscalationEngine
from callrouter.routing.errors import RoutingError

logger = logging.getLogger("callrouter.webhooks")

router = APIRouter(prefix="/api/telephony", tags=["telephony"])

WEBHOOK_SECRET_HEADER = "x-webhook-secret"

# Provider call statuses that end a ring without an answer.
PROVIDER_STATUS_RESULTS = {
    "no-answer": AttemptResult.MISSED,
    "busy": AttemptResult.TIMEOUT,
    "failed": AttemptResult.TIMEOUT,
    "canceled": AttemptResult.TIMEOUT,
}


def _validate_webhook_access(request: Request) -> None:
    """Check the shared secret; an unset secret is tolerated outside production."""
    configured_secret = (settings.webhook_shared_secret or "").strip()
    if not configured_secret:
        if settings.is_production:
            logger.error("Telephony webhook rejected: WEBHOOK_SHARED_SECRET is not configured")
            raise HTTPException(status_code=503, detail="Telephony webhooks are not configured")
        return

    provided_secret = (request.headers.get(WEBHOOK_SECRET_HEADER) or "").strip()
    if not provided_secret or not hmac.compare_digest(configured_secret, provided_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook credentials")


class IncomingCallPayload(BaseModel):
    caller_id: str | None = Field(default=None, max_length=50)
    call_sid: str | None = Field(default=None, max_length=255)


class _CalleePayload(BaseModel):
    incident_id: int = Field(gt=0)
    user_id: int | None = Field(default=None, gt=0)
    phone: str | None = Field(default=None, max_length=20)

    @model_validator(mode="after")
    def _require_callee(self):
        if self.user_id is None and not self.phone:
            raise ValueError("either user_id or phone is required")
        return self

    @property
    def identity(self) -> int | str:
        return self.user_id if self.user_id is not None else self.phone


class AnsweredPayload(_CalleePayload):
    pass


class AttemptResultPayload(_CalleePayload):
    result: AttemptResult | None = None
    provider_status: str | None = None
    reason: DeclineReason | None = None
    reason_text: str | None = Field(default=None, max_length=1000)

    def resolved_result(self) -> AttemptResult | None:
        if self.result is not None:
            return self.result
        return PROVIDER_STATUS_RESULTS.get((self.provider_status or "").strip().lower())


class CompletedPayload(BaseModel):
    incident_id: int = Field(gt=0)
    call_sid: str | None = None
    duration: int | None = Field(default=None, ge=0)


@router.post("/incoming-call", status_code=201)
async def incoming_call(
    payload: IncomingCallPayload,
    request: Request,
    engine: EscalationEngine = Depends(get_engine),
):
    """A new emergency call reached the hotline; open an incident and start ringing."""
    _validate_webhook_access(request)
    try:
        incident_id = await engine.on_incoming_call(payload.caller_id, payload.call_sid)
    except RoutingError as exc:
        raise http_error(exc)

    logger.info(f"Incoming call from {payload.caller_id} routed as incident {incident_id}")
    return {"status": "ok", "incident_id": incident_id}


@router.post("/answered")
async def call_answered(
    payload: AnsweredPayload,
    request: Request,
    engine: EscalationEngine = Depends(get_engine),
):
    _validate_webhook_access(request)
    try:
        incident = await engine.on_answered(payload.incident_id, payload.identity)
    except RoutingError as exc:
        raise http_error(exc)
    return {
        "status": "ok",
        "incident_id": incident.id,
        "assigned_user_id": incident.assigned_user_id,
        "routing_state": incident.routing_state,
    }


@router.post("/attempt-result")
async def attempt_result(
    payload: AttemptResultPayload,
    request: Request,
    engine: EscalationEngine = Depends(get_engine),
):
    """A ring ended without an answer (missed, declined or timed out)."""
    _validate_webhook_access(request)
    result = payload.resolved_result()
    if result is None:
        raise HTTPException(status_code=400, detail="Unrecognised call result")
    if result in (AttemptResult.RINGING, AttemptResult.ANSWERED):
        raise HTTPException(status_code=400, detail=f"'{result.value}' is not a terminal call result")

    try:
        advanced = await engine.on_call_terminal_result(
            payload.incident_id,
            payload.identity,
            result,
            reason=payload.reason,
            reason_text=payload.reason_text,
        )
    except RoutingError as exc:
        raise http_error(exc)
    return {"status": "ok", "result": result.value, "advanced": advanced}


@router.post("/completed")
async def call_completed(
    payload: CompletedPayload,
    request: Request,
    engine: EscalationEngine = Depends(get_engine),
):
    _validate_webhook_access(request)
    try:
        await engine.record_call_completed(payload.incident_id, payload.call_sid, payload.duration)
    except RoutingError as exc:
        raise http_error(exc)
    return {"status": "ok"}
