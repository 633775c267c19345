"""One ring of one person for one incident."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel

from callrouter.database import Base


class AttemptResult(str, enum.Enum):
    RINGING = "ringing"
    ANSWERED = "answered"
    MISSED = "missed"
    DECLINED = "declined"
    TIMEOUT = "timeout"


class DeclineReason(str, enum.Enum):
    BUSY = "busy"
    ALREADY_ON_CALL = "already_on_call"
    OUT_OF_AREA = "out_of_area"
    OTHER = "other"


TERMINAL_RESULTS = frozenset({AttemptResult.MISSED, AttemptResult.DECLINED, AttemptResult.TIMEOUT})


class CallAttempt(Base):
    __tablename__ = "call_attempts"
    __table_args__ = (Index("ix_call_attempts_incident_result", "incident_id", "result"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(Integer, ForeignKey("incidents.id"), index=True)
    step: Mapped[int] = mapped_column(Integer)
    target_user_id: Mapped[int] = mapped_column(Integer, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    decline_reason_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class CallAttemptResponse(BaseModel):
    id: int
    incident_id: int
    step: int
    target_user_id: int
    started_at: datetime
    ended_at: datetime | None = None
    result: str | None = None
    decline_reason: str | None = None
    decline_reason_text: str | None = None

    model_config = {"from_attributes": True}
