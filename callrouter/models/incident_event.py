"""Append-only audit trail of everything that happened to an incident."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel

from callrouter.database import Base


class IncidentEvent(Base):
    __tablename__ = "incident_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(Integer, ForeignKey("incidents.id"), index=True)
    type: Mapped[str] = mapped_column(String(100), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class IncidentEventResponse(BaseModel):
    id: int
    incident_id: int
    type: str
    user_id: int | None = None
    at: datetime
    payload_json: dict[str, Any] | None = None

    model_config = {"from_attributes": True}
