"""Singleton pointer into the rotating pool."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from callrouter.database import Base

ROTATION_STATE_ID = 1


class RotationState(Base):
    __tablename__ = "rotation_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pointer_index: Mapped[int] = mapped_column(Integer, default=0)
    last_used_user_ids: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
