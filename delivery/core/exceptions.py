"""
Platform-wide exception hierarchy.

Services raise these; blueprints never catch them. ``create_app`` registers
one handler per type so every endpoint returns the same JSON envelope and
HTTP status for the same failure.

Usage:
    from delivery.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("Comment is required for this action.", details={"comment": "required"})
"""


class DeliveryError(Exception):
    """Base class for every recoverable, client-facing service error."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(DeliveryError):
    """Malformed or rule-violating input: unknown action, missing comment,
    bad step definition, send-back reason too short.

    Maps to HTTP 400.
    """

    status_code = 400


class AuthenticationError(DeliveryError):
    """No authenticated actor could be resolved for the request.

    Maps to HTTP 401.
    """

    status_code = 401

    def __init__(self, message: str = "Authentication required.", details: dict | None = None) -> None:
        super().__init__(message, details)


class AuthorizationError(DeliveryError):
    """The actor is authenticated but may not perform this action: not in the
    resolved approver set, wrong role for a package stage, not the owner.

    Maps to HTTP 403.
    """

    status_code = 403


class NotFoundError(DeliveryError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Task", "WorkflowInstance").
        resource_id: The key that was looked up. Included in the message.
        message: Optional override for the default "<resource> id=<id> not found".
    """

    status_code = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ConflictError(DeliveryError):
    """The entity is not in the state the requested transition expects, or
    another request changed it first (version guard).

    Maps to HTTP 409.

    Args:
        message: Human-readable explanation.
        current_status: The status the entity was found in, when known.
        details: Extra structured payload (e.g. live instance count on delete).
    """

    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.current_status = current_status
        details = dict(details or {})
        if current_status is not None:
            details.setdefault("current_status", current_status)
        super().__init__(message, details)


class ResolutionError(DeliveryError):
    """A dynamic approver rule resolved to nobody.

    Reported instead of silently authorizing no one; an administrator has to
    fix the project/task relationships (or a SUPER_ADMIN acts) before the
    step can progress.

    Maps to HTTP 422.
    """

    status_code = 422

    def __init__(self, rule: str, message: str | None = None) -> None:
        self.rule = rule
        super().__init__(
            message or f"No eligible approver could be resolved for rule {rule}.",
            details={"rule": rule},
        )
