"""
Platform-wide exception hierarchy.

Services raise these; blueprints register a single handler against
``DomainError`` and render ``api_error(exc.code, str(exc), ...)`` so every
endpoint reports the same ``{code, message}`` body and HTTP status.

All business checks run before any write, so raising one of these never
leaves a half-applied change behind.

Usage:
    from envcrm.core.exceptions import NotFoundError, ValidationError
    from envcrm.utils.errors import E

    raise NotFoundError("Task", task_id, code=E.TASK_NOT_FOUND)
    raise ValidationError("Reason is required", code=E.REASON_REQUIRED)
"""

from envcrm.utils.errors import E


class DomainError(Exception):
    """Base class for business-rule failures surfaced to the caller.

    Args:
        message: Human-readable explanation.
        code: Machine-readable error code (an ``E.*`` constant).
        status: HTTP status the blueprint layer should answer with.
        details: Optional structured payload (offending dimension, allowed set, …).
    """

    default_code = E.INTERNAL
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        details: dict | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.status = status or self.default_status
        self.details = details or {}
        super().__init__(message)


class NotFoundError(DomainError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Project", "Task").
        resource_id: The PK that was looked up.
    """

    default_code = E.NOT_FOUND
    default_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None, *, code: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, code=code)


class ValidationError(DomainError):
    """Well-formed input that violates a business rule (invalid transition, blank reason, …)."""

    default_code = E.VALIDATION_INVALID
    default_status = 400


class ConflictError(DomainError):
    """Operation conflicts with existing state (e.g. a pending unlock request). Maps to 409."""

    default_code = E.CONFLICT_STATE
    default_status = 409


class PermissionDenied(DomainError):
    """Actor lacks the capability required for the operation. Maps to 403."""

    default_code = E.INSUFFICIENT_PERMISSIONS
    default_status = 403

    def __init__(self, actor_id: str | None, capability: str, message: str | None = None) -> None:
        self.actor_id = actor_id
        self.capability = capability
        super().__init__(
            message or f"User {actor_id} does not have permission '{capability}'",
            details={"required": capability},
        )


class ResourceLocked(DomainError):
    """Mutation attempted on a locked resource. Maps to 423."""

    default_code = E.TASK_LOCKED
    default_status = 423
