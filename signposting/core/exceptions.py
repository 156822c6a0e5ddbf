"""
Platform-wide exception hierarchy.

Every service in the workflow engine raises one of these types and
nothing else for expected failures. Blueprints register one handler per
type so the HTTP mapping lives in a single place:

    NotFoundError        → 404
    ForbiddenError       → 403
    ValidationError      → 422
    InvalidStateError    → 409
    ConflictError        → 409
    VersionConflictError → 409

Usage:
    from signposting.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowTemplate", resource_id=42)
    raise ValidationError("Label is required", details={"label": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowTemplate").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
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


class ForbiddenError(Exception):
    """Raised when the caller lacks the role required for a scope.

    Also raised when no caller could be resolved at all: permission checks
    fail closed.

    Args:
        message: Human-readable explanation (safe to show to the caller).
        user_id: The caller that was denied, for logs.
    """

    def __init__(self, message: str = "Forbidden", user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Covers malformed or semantically invalid input: a missing label, an
    edge pointing into another template, a self-link, a dangling edge
    chosen at runtime.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an operation is not legal in the entity's current status.

    Examples: submitting an APPROVED template for review, advancing a
    COMPLETED instance, starting an instance from a DRAFT template.

    Args:
        message: Human-readable explanation.
        current_status: The status that blocked the operation.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

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


class VersionConflictError(ConflictError):
    """Raised when the caller's version stamp is stale (optimistic concurrency).

    Args:
        resource: Model name.
        resource_id: PK of the row whose version moved on.
        expected: Version the caller based its change on.
        actual: Version currently stored, when known.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        Exception.__init__(
            self,
            f"{resource} id={resource_id} was modified concurrently "
            f"(expected version {expected}, current {actual})",
        )
        self.resource = resource
        self.field = "version"
        self.value = None if expected is None else str(expected)
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
