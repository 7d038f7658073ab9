"""
Platform-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=project_id)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Task").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. invalid state transition, dependency cycle).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """A status change that the entity's transition table does not allow."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            details={"status": f"{current} -> {target} not allowed"},
        )


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value (truncated in HTTP response; full in logs).
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class IdempotencyConflictError(Exception):
    """An Idempotency-Key was reused while in flight or with a different request.

    ``reason`` is ``"in_progress"`` (HTTP 409, retry later) or ``"mismatch"``
    (HTTP 422, the key belongs to a different request).
    """

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        if reason == "in_progress":
            msg = f"Request with Idempotency-Key {key!r} is still being processed"
        else:
            msg = f"Idempotency-Key {key!r} was already used for a different request"
        super().__init__(msg)

    @property
    def status_code(self) -> int:
        return 409 if self.reason == "in_progress" else 422


class AuthenticationError(Exception):
    """Credentials missing, wrong, locked out or expired.  Maps to HTTP 401."""

    def __init__(self, message: str = "Authentication required", reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Authenticated caller lacks the permission for an action.  Maps to HTTP 403."""

    def __init__(self, permission: str | None = None, message: str | None = None) -> None:
        self.permission = permission
        super().__init__(message or f"Permission denied: {permission}")
