"""Error categories surfaced to callers of the gate services.

Findings such as missing coverage or failing tests are never raised; they
are reported as violations on a decision. Only failures that prevent any
evaluation from happening are exceptions.
"""

from __future__ import annotations


class GateError(Exception):
    """Base class for caller-visible gate errors."""


class NotFoundError(GateError):
    """A referenced entity does not exist in the store."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class AuthorizationError(GateError):
    """The acting user is not allowed to perform the operation."""

    def __init__(self, user_id: str, action: str = "emergency bypass") -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(f"User is not authorized for {action}: {user_id}")


class DisabledError(GateError):
    """The requested feature is switched off by configuration."""

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"{feature.capitalize()} is not enabled")


class StoreError(GateError):
    """The backing store could not be read or written."""
