"""
JSON error envelope for the portal API.

Every failing request answers ``{"error": <message>, "code": <code>}`` plus
an optional ``details`` object.  Codes are stable strings the portal UI
switches on; the HTTP status follows from the code unless a view overrides it.

    from app.utils.errors import E, api_error, error_response

    return api_error(E.VALIDATION_REQUIRED, "comment is required")
    return error_response(exc)      # any service-layer exception
"""

from __future__ import annotations

from flask import jsonify

from app.core.exceptions import (
    ApprovalAssignmentError,
    AuthenticationRequiredError,
    ChangeTransitionError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
    WorkflowTransitionError,
)


class E:
    """Values of the ``code`` field."""

    # Request body shape (400) and business rules (422)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Caller identity, role gates and approval assignment
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_ASSIGNED = "ERR_APPROVAL_NOT_ASSIGNED"

    # Retired endpoints such as the legacy sponsor-decision route
    GONE = "ERR_GONE"

    # Store unavailable or unexpected failure
    PERSISTENCE = "ERR_PERSISTENCE"
    INTERNAL = "ERR_INTERNAL"

    # Submission lifecycle and change-request transitions
    WORKFLOW_ACTION_NOT_ALLOWED = "WORKFLOW_ACTION_NOT_ALLOWED"
    WORKFLOW_CHANGE_TRANSITION = "WORKFLOW_CHANGE_TRANSITION"


HTTP_STATUS_CODES: dict[int, tuple[str, ...]] = {
    400: (E.VALIDATION_REQUIRED, E.VALIDATION_INVALID),
    401: (E.UNAUTHENTICATED,),
    403: (E.FORBIDDEN, E.NOT_ASSIGNED),
    404: (E.NOT_FOUND,),
    409: (E.CONFLICT_DUPLICATE, E.CONFLICT_STATE, E.WORKFLOW_ACTION_NOT_ALLOWED, E.WORKFLOW_CHANGE_TRANSITION),
    410: (E.GONE,),
    422: (E.VALIDATION_RULE,),
    500: (E.INTERNAL,),
    503: (E.PERSISTENCE,),
}

_STATUS_BY_CODE = {code: status for status, codes in HTTP_STATUS_CODES.items() for code in codes}

# Service exceptions the blueprints translate; order matters only for subclasses
DOMAIN_ERRORS = (
    NotFoundError,
    ValidationError,
    ConflictError,
    AuthenticationRequiredError,
    ApprovalAssignmentError,
    PermissionDeniedError,
    WorkflowTransitionError,
    ChangeTransitionError,
    PersistenceError,
)


def status_for(code: str) -> int:
    return _STATUS_BY_CODE.get(code, 400)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for a Flask view; ``status`` defaults from ``code``."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)


def error_response(exc: Exception):
    """Translate a service-layer exception into the portal error envelope.

    Persistence failures keep their own status (503 when the store is
    required but unreachable) and expose the persistence code.  Anything
    outside ``DOMAIN_ERRORS`` is re-raised for Flask's generic handlers.
    """
    if isinstance(exc, NotFoundError):
        return api_error(E.NOT_FOUND, str(exc))
    if isinstance(exc, ValidationError):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)
    if isinstance(exc, ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(exc))
    if isinstance(exc, AuthenticationRequiredError):
        return api_error(E.UNAUTHENTICATED, str(exc))
    if isinstance(exc, ApprovalAssignmentError):
        return api_error(E.NOT_ASSIGNED, str(exc))
    if isinstance(exc, PermissionDeniedError):
        return api_error(E.FORBIDDEN, str(exc))
    if isinstance(exc, WorkflowTransitionError):
        return api_error(
            E.WORKFLOW_ACTION_NOT_ALLOWED, str(exc),
            details={"current": exc.current_status, "allowed_actions": exc.allowed},
        )
    if isinstance(exc, ChangeTransitionError):
        return api_error(E.WORKFLOW_CHANGE_TRANSITION, str(exc), details={"current": exc.current_status})
    if isinstance(exc, PersistenceError):
        return api_error(E.PERSISTENCE, str(exc), status=exc.status, details={"code": exc.code})
    raise exc
