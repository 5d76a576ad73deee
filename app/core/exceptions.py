"""
Portal-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
get consistent HTTP status codes everywhere.  Plain data flows out of the
service layer, never framework responses.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Submission", resource_id="SP-2026-001")
    raise ValidationError("Comment is required", details={"comment": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced submission / request / change request is absent.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Submission", "ChangeRequest").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class AuthenticationRequiredError(Exception):
    """Raised when an operation needs an identified principal. Maps to HTTP 401."""

    DEFAULT_MESSAGE = "An identified user is required for this operation."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.DEFAULT_MESSAGE)


class PermissionDeniedError(Exception):
    """Raised when the principal may not perform an operation. Maps to HTTP 403."""


class ApprovalAssignmentError(Exception):
    """Raised when no pending approval request is assigned to the principal.

    The message is deliberately generic: "wrong approver" and "nothing
    pending" are indistinguishable so the real approver is never disclosed.
    Maps to HTTP 403.
    """

    DEFAULT_MESSAGE = "No pending approval request assigned to this user for the selected stage."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.DEFAULT_MESSAGE)


class WorkflowTransitionError(Exception):
    """Raised when a workflow action is not allowed for the submission's position."""

    def __init__(self, entity_id: str, action: str, current: str, allowed: list[str] | None = None):
        self.entity_id = entity_id
        self.action = action
        self.current_status = current
        self.allowed = list(allowed or [])
        msg = f"Action {action} is not allowed for {entity_id} ({current})"
        msg += f". Allowed: {', '.join(self.allowed) if self.allowed else 'none'}"
        super().__init__(msg)


class ChangeTransitionError(Exception):
    """Raised when a change request transition is invalid."""

    def __init__(self, change_request_id: str, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' change request {change_request_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.change_request_id = change_request_id
        self.action = action
        self.current_status = current


class PersistenceError(Exception):
    """Raised when the durable store cannot be read or written.

    Distinct from "missing": a failed read must never be masked as an empty
    collection.  ``status`` defaults to 503 so callers can retry.
    """

    DB_URL_MISSING = "PERSISTENCE_DB_URL_MISSING"
    DB_INIT_FAILED = "PERSISTENCE_DB_INIT_FAILED"
    DB_READ_FAILED = "PERSISTENCE_DB_READ_FAILED"
    DB_WRITE_FAILED = "PERSISTENCE_DB_WRITE_FAILED"
    FILE_READ_FAILED = "PERSISTENCE_FILE_READ_FAILED"
    FILE_WRITE_FAILED = "PERSISTENCE_FILE_WRITE_FAILED"

    def __init__(self, code: str, message: str, status: int = 503) -> None:
        self.code = code
        self.status = status
        super().__init__(message)
