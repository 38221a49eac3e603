"""Error taxonomy shared by the core services and the API boundary.

Every failure a core operation can surface is a :class:`CircleError`. The API
layer turns these into ``{"detail": ..., "code": ...}`` responses. Core code
that holds optimistic state rolls it back and re-raises.
"""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError


class CircleError(Exception):
    """Base class for all circlekit failures."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(CircleError):
    """Input rejected before any backend call was made."""

    code = "validation_failed"
    status_code = 422


class NotFoundError(CircleError):
    """The addressed entity does not exist (or is not visible to the actor)."""

    code = "not_found"
    status_code = 404


class PermissionDeniedError(CircleError):
    """The actor is not allowed to perform the operation."""

    code = "permission_denied"
    status_code = 403


class ConflictError(CircleError):
    """The operation conflicts with the current state."""

    code = "conflict"
    status_code = 409


class AlreadyMemberError(ConflictError):
    """The actor already holds an active membership."""

    code = "already_member"


class PrivateCommunityError(PermissionDeniedError):
    """Private communities cannot be joined directly."""

    code = "private_community"


class NotMemberError(NotFoundError):
    """The actor holds no active membership in the community."""

    code = "not_member"


class BackendError(CircleError):
    """A backend command failed (network, constraint, permission)."""

    code = "backend_unavailable"
    status_code = 503


class MembershipTransitionError(BackendError):
    """A multi-step membership transition was aborted before completing.

    The transaction is rolled back, so no step of the transition is visible.
    """

    code = "transition_aborted"

    def __init__(self, message: str, *, step: str, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.step = step


def backend_error_from(exc: SQLAlchemyError, action: str) -> BackendError:
    """Wrap a SQLAlchemy failure in a :class:`BackendError` with a stable code."""
    if isinstance(exc, StaleDataError):
        # Another writer removed or changed the row first.
        return BackendError(f"Failed to {action}: row changed concurrently", code="stale_row")
    if isinstance(exc, IntegrityError):
        return BackendError(f"Failed to {action}: constraint violated", code="constraint_violation")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return BackendError(f"Failed to {action}: connection lost", code="backend_unavailable")
    return BackendError(f"Failed to {action}", code="backend_unavailable")
