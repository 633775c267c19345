"""Configuration store — business hours, ring duration and escalation ladders.

Rows live in ``system_config`` and are re-read on every routing decision.
A missing or unreadable row never stops routing: the permissive defaults
below are used instead (business hours on, default ladders, 30 s ring).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.models.system_config import SystemConfig
from callrouter.routing.errors import ConfigurationMissing
from callrouter.routing.steps import DEFAULT_AFTER_HOURS_LADDER, DEFAULT_BUSINESS_HOURS_LADDER

logger = logging.getLogger("callrouter.config_store")

BUSINESS_HOURS_KEY = "business_hours"
RING_DURATION_KEY = "ring_duration"
BUSINESS_HOURS_LADDER_KEY = "business_hours_ladder"
AFTER_HOURS_LADDER_KEY = "after_hours_ladder"

DEFAULT_RING_SECONDS = 30
MIN_RING_SECONDS = 10
MAX_RING_SECONDS = 60


class BusinessHoursWindow(BaseModel):
    """Weekly business-hours window. Days use 0 = Sunday through 6 = Saturday."""

    days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    start_hour: int = Field(default=8, ge=0, le=23)
    start_minute: int = Field(default=0, ge=0, le=59)
    end_hour: int = Field(default=17, ge=0, le=23)
    end_minute: int = Field(default=0, ge=0, le=59)
    timezone: str = "UTC"

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days must be weekday integers 0-6 (0 = Sunday)")
        return sorted(set(value))

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value

    @property
    def start_minutes(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end_minutes(self) -> int:
        return self.end_hour * 60 + self.end_minute


class RingDuration(BaseModel):
    seconds: int = Field(default=DEFAULT_RING_SECONDS, ge=MIN_RING_SECONDS, le=MAX_RING_SECONDS)


class LadderConfig(BaseModel):
    steps: list[str]

    @model_validator(mode="after")
    def _strip_steps(self) -> "LadderConfig":
        self.steps = [step.strip() for step in self.steps if step and step.strip()]
        return self


def is_business_hours(window: BusinessHoursWindow, at: datetime) -> bool:
    """Return True when ``at`` falls inside the window in the window's timezone.

    The weekday is taken in the configured timezone, so a late-evening UTC
    instant can still land on the previous local day.
    """
    local = at.astimezone(ZoneInfo(window.timezone))
    weekday = (local.weekday() + 1) % 7  # Monday=0 -> Sunday=0 numbering
    if weekday not in window.days:
        return False

    minute_of_day = local.hour * 60 + local.minute
    return window.start_minutes <= minute_of_day < window.end_minutes


class ConfigStore:
    """Reads and writes routing configuration rows for one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _load(self, key: str) -> dict:
        result = await self.session.execute(select(SystemConfig).where(SystemConfig.key == key))
        row = result.scalar_one_or_none()
        if row is None or not isinstance(row.value, dict):
            raise ConfigurationMissing(key)
        return row.value

    async def _save(self, key: str, value: dict) -> None:
        result = await self.session.execute(select(SystemConfig).where(SystemConfig.key == key))
        row = result.scalar_one_or_none()
        if row is None:
            self.session.add(SystemConfig(key=key, value=value))
        else:
            row.value = value
        await self.session.flush()
        logger.info(f"Configuration '{key}' updated")

    # ── business hours ───────────────────────────────────────

    async def get_business_hours(self) -> Optional[BusinessHoursWindow]:
        """Return the configured window, or None when it is missing or invalid."""
        try:
            raw = await self._load(BUSINESS_HOURS_KEY)
            return BusinessHoursWindow.model_validate(raw)
        except ConfigurationMissing:
            return None
        except ValidationError as exc:
            logger.warning(f"Ignoring invalid business hours config: {exc}")
            return None

    async def set_business_hours(self, window: BusinessHoursWindow) -> BusinessHoursWindow:
        await self._save(BUSINESS_HOURS_KEY, window.model_dump())
        return window

    async def evaluate_business_hours(self, at: datetime) -> bool:
        window = await self.get_business_hours()
        if window is None:
            logger.info("No business hours configured; treating call as business hours")
            return True
        return is_business_hours(window, at)

    # ── ring duration ────────────────────────────────────────

    async def get_ring_duration(self) -> int:
        try:
            raw = await self._load(RING_DURATION_KEY)
            return RingDuration.model_validate(raw).seconds
        except ConfigurationMissing:
            return DEFAULT_RING_SECONDS
        except ValidationError as exc:
            logger.warning(f"Ignoring invalid ring duration config: {exc}")
            return DEFAULT_RING_SECONDS

    async def set_ring_duration(self, seconds: int) -> int:
        duration = RingDuration(seconds=seconds)
        await self._save(RING_DURATION_KEY, duration.model_dump())
        return duration.seconds

    # ── ladders ──────────────────────────────────────────────

    @staticmethod
    def _ladder_key(business_hours: bool) -> str:
        return BUSINESS_HOURS_LADDER_KEY if business_hours else AFTER_HOURS_LADDER_KEY

    async def get_ladder(self, business_hours: bool) -> list[str]:
        key = self._ladder_key(business_hours)
        default = DEFAULT_BUSINESS_HOURS_LADDER if business_hours else DEFAULT_AFTER_HOURS_LADDER
        try:
            raw = await self._load(key)
            return LadderConfig.model_validate(raw).steps
        except ConfigurationMissing:
            return list(default)
        except ValidationError as exc:
            logger.warning(f"Ignoring invalid ladder config '{key}': {exc}")
            return list(default)

    async def set_ladder(self, business_hours: bool, steps: list[str]) -> list[str]:
        ladder = LadderConfig(steps=steps)
        await self._save(self._ladder_key(business_hours), ladder.model_dump())
        return ladder.steps
