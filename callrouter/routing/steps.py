"""Ladder step names and how each one dispatches."""

from __future__ import annotations

import enum


class LadderStep(str, enum.Enum):
    PRIMARY_ONCALL = "primary_oncall"
    SECONDARY = "secondary"
    ADMIN = "admin"
    MANAGER = "manager"
    BROADCAST = "broadcast"
    ROTATING_POOL = "rotating_pool"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> "LadderStep":
        """Map a configured step name to a step; unrecognised names become UNKNOWN."""
        try:
            step = cls((name or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN
        return step

    @property
    def fans_out(self) -> bool:
        """Whether every resolved candidate is rung at once."""
        return self in _FAN_OUT

    @property
    def single_target(self) -> bool:
        """Whether the step is one person's turn, so a failed ring ends it."""
        return self in _SINGLE_TARGET


_FAN_OUT = frozenset({LadderStep.BROADCAST, LadderStep.ROTATING_POOL})
_SINGLE_TARGET = frozenset({LadderStep.PRIMARY_ONCALL, LadderStep.SECONDARY, LadderStep.ADMIN})

KNOWN_STEPS = tuple(step.value for step in LadderStep if step is not LadderStep.UNKNOWN)

DEFAULT_BUSINESS_HOURS_LADDER = (
    LadderStep.PRIMARY_ONCALL.value,
    LadderStep.SECONDARY.value,
    LadderStep.ADMIN.value,
    LadderStep.MANAGER.value,
    LadderStep.BROADCAST.value,
)

DEFAULT_AFTER_HOURS_LADDER = (
    LadderStep.PRIMARY_ONCALL.value,
    LadderStep.SECONDARY.value,
    LadderStep.MANAGER.value,
    LadderStep.ADMIN.value,
    LadderStep.ROTATING_POOL.value,
)
