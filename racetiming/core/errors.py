"""
errors.py — Exception types raised by the timing core.

Every error is terminal for the operation that raised it. The API layer
maps each kind to an HTTP status in server.py.
"""

from __future__ import annotations

from typing import Optional


class RaceTimingError(Exception):
    """Base class. `entity` / `field` name what failed, when known."""

    kind = "error"

    def __init__(self, message: str, entity: Optional[str] = None,
                 field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.field = field

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "error": self.kind,
            "entity": self.entity,
            "field": self.field,
        }


class ValidationError(RaceTimingError):
    """Malformed input, or entities that do not belong together."""
    kind = "validation"


class NotFoundError(RaceTimingError):
    """Referenced entity does not exist."""
    kind = "not_found"


class InvalidStateError(RaceTimingError):
    """Operation not legal in the entity's current state."""
    kind = "invalid_state"


class AuthorizationError(RaceTimingError):
    """Caller was not cleared to act on the race."""
    kind = "authorization"


class ConflictError(RaceTimingError):
    """A concurrent write changed the row we were about to update."""
    kind = "conflict"
