"""
Workflow exception hierarchy.

Every caller-facing rejection raised by the service layer is one of the
types below.  The API layer maps them to HTTP responses through
``http_status`` / ``code`` / ``to_dict()`` without importing service modules.

Usage:
    from taps.core.exceptions import NotFoundError, ValidationFailedError

    raise NotFoundError(resource="Request", resource_id=request_id)
    raise ValidationFailedError("A note is required", details={"library_note": "required"})
"""


class WorkflowError(Exception):
    """Base class for caller errors.  Nothing is persisted when one is raised."""

    code = "ERR_INTERNAL"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(WorkflowError):
    """Raised when the requested record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Request").
        resource_id: The key that was looked up.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(WorkflowError):
    """Raised when a role proposes a field outside its allow-list.

    Args:
        role: The acting role.
        fields: The offending field names.
    """

    code = "ERR_FORBIDDEN"
    http_status = 403

    def __init__(self, role: str, fields) -> None:
        self.role = role
        self.fields = sorted(fields)
        super().__init__(
            f"Role {role} may not modify: {', '.join(self.fields)}",
            details={"fields": self.fields},
        )


class ValidationFailedError(WorkflowError):
    """Raised when well-formed input violates a business rule.

    Examples: a status value outside the department vocabulary, or a blocking
    department status without an accompanying note.
    """

    code = "ERR_VALIDATION_FAILED"
    http_status = 422


class ConflictingTransitionError(WorkflowError):
    """Raised when the resulting state would break the workflow gate.

    Args:
        message: Explanation of the rejected transition.
        blocking: Mapping of track name → blocking value, when relevant.
    """

    code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(self, message: str, blocking: dict | None = None) -> None:
        self.blocking = blocking or {}
        super().__init__(message, details={"blocking": self.blocking} if self.blocking else None)
