"""On-call schedule entries: who can be rung, in which role, and when."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column

from callrouter.database import Base


class OnCallScheduleEntry(Base):
    """A role assignment active over the half-open window [start_time, end_time)."""

    __tablename__ = "oncall_schedule"
    __table_args__ = (Index("ix_oncall_schedule_window", "start_time", "end_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    priority_order: Mapped[int] = mapped_column(Integer, default=1)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_secondary: Mapped[bool] = mapped_column(Boolean, default=False)
    eligible_pool: Mapped[bool] = mapped_column(Boolean, default=True)
