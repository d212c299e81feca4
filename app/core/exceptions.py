"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

    NotFoundError      → 404
    ForbiddenError     → 403
    ConflictError      → 409
    InvalidStateError  → 400
    ValidationError    → 422

Usage:
    from app.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="WorkflowTemplate", resource_id=42)
    raise InvalidStateError("Required steps cannot be skipped")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist or is not visible to the actor.

    Used for BOTH genuinely missing records AND matters/contacts the actor
    may not access: a 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "Matter", "WorkflowInstance").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the actor is known but not allowed to perform the action.

    Typical causes: actor outside the step's eligible set, non-admin
    attempting an admin-only operation.
    """

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with the current state of a resource.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value collides.
        value: The conflicting value.
        message: Optional override for the default message.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")

    @classmethod
    def from_message(cls, message: str, resource: str = "resource") -> "ConflictError":
        """State conflicts that are not about a duplicate field value."""
        return cls(resource=resource, field="state", message=message)


class InvalidStateError(Exception):
    """Raised when a well-formed request is not legal in the entity's current state.

    Examples: skipping a required step, completing a step that is not in
    progress, restarting a skip that was not a cancellation, completion
    payload rejected by the action handler.

    Args:
        message: Human-readable explanation.
        code: Optional machine-readable code (e.g. handler error codes).
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
                 Keys are field names; values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
