"""Errors raised by the escalation engine and its collaborators."""

from __future__ import annotations


class RoutingError(Exception):
    """Base class for escalation engine errors."""


class NotFound(RoutingError):
    """An incident, user or site id has no record."""

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class InvalidTransition(RoutingError):
    """The requested mutation is not allowed in the incident's current state."""


class StorageUnavailable(RoutingError):
    """The storage collaborator could not be reached. Safe to retry."""


class ConfigurationMissing(RoutingError):
    """A configuration row is absent or unreadable; callers fall back to defaults."""

    def __init__(self, key: str) -> None:
        super().__init__(f"configuration '{key}' is not set")
        self.key = key
