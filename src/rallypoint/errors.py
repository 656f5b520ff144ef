"""Error taxonomy surfaced to request handlers.

Each error carries the transport status a handler should map it to. The
permission evaluator never raises these for a denial; it returns a
``Decision`` and the engines decide whether to raise.
"""

from __future__ import annotations


class RallypointError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RallypointError):
    """Raised when input is malformed, before any permission check runs."""

    status_code = 400


class MissingRequiredTarget(ValidationError):
    """Raised when a scope or target id required by the action is absent."""


class Forbidden(RallypointError):
    """Raised when a permission guard denies the action."""

    status_code = 403

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PromotionGuardFailed(Forbidden):
    """Raised when a promotion guard rejects the transition."""


class TargetNotFound(RallypointError):
    """Raised when the addressed user, chapter, region or content does not exist."""

    status_code = 404


class ConflictError(RallypointError):
    """Raised when a write collides with existing state."""

    status_code = 409


class DuplicateMembership(ConflictError):
    """Raised for repeated memberships, join requests or registrations."""


class DuplicateName(ConflictError):
    """Raised when a unique name or email is already taken."""
