"""Incident data model — one inbound emergency call and its routing state."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field

from callrouter.database import Base


class IncidentStatus(str, enum.Enum):
    OPEN = "open"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    RESOLVED = "resolved"
    FOLLOW_UP_REQUIRED = "follow_up_required"


class IncidentOutcome(str, enum.Enum):
    NUISANCE = "nuisance"
    DEVICE_ISSUE = "device_issue"
    PANEL_TROUBLE = "panel_trouble"
    UNKNOWN = "unknown"
    OTHER = "other"


class RoutingState(str, enum.Enum):
    ROUTING = "routing"
    AWAITING_CLAIM = "awaiting_claim"
    ASSIGNED = "assigned"
    CRITICAL = "critical"
    CLOSED = "closed"


class Incident(Base):
    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    business_hours: Mapped[bool] = mapped_column(Boolean)
    caller_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    site_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(30), default=IncidentStatus.OPEN.value, index=True)
    assigned_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    critical: Mapped[bool] = mapped_column(Boolean, default=False)
    answered_unclaimed: Mapped[bool] = mapped_column(Boolean, default=False)
    outcome: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    outcome_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    follow_up_required: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Escalation progress, persisted so a restart can resume or audit routing.
    routing_state: Mapped[str] = mapped_column(
        String(20), default=RoutingState.ROUTING.value, index=True
    )
    ladder_json: Mapped[list] = mapped_column(JSON, default=list)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    attempted_user_ids_json: Mapped[list] = mapped_column(JSON, default=list)
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def ladder(self) -> list[str]:
        return list(self.ladder_json or [])

    @property
    def attempted_user_ids(self) -> list[int]:
        return [int(user_id) for user_id in (self.attempted_user_ids_json or [])]

    @property
    def is_closed(self) -> bool:
        return self.routing_state == RoutingState.CLOSED.value


# ── Pydantic Schemas ─────────────────────────────────────────

class IncidentResponse(BaseModel):
    id: int
    external_id: str | None = None
    created_at: datetime
    business_hours: bool
    caller_id: str | None = None
    site_id: int | None = None
    status: str
    assigned_user_id: int | None = None
    critical: bool
    answered_unclaimed: bool
    outcome: str | None = None
    outcome_notes: str | None = None
    follow_up_required: bool
    resolved_at: datetime | None = None
    routing_state: str
    current_step: int
    ladder: list[str] = []
    attempted_user_ids: list[int] = []

    model_config = {"from_attributes": True}


class StatusUpdate(BaseModel):
    status: IncidentStatus


class CloseRequest(BaseModel):
    outcome: IncidentOutcome
    outcome_notes: str | None = None
    follow_up_required: bool = False


class ManualAssignRequest(BaseModel):
    user_id: int = Field(gt=0)
