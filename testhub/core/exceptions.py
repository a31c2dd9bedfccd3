"""
Test Hub exception hierarchy.

Every service and repository in the package raises one of these types, so a
caller (CI client adapter, dashboard API, CLI) can branch on the class instead
of parsing messages:

    NotFoundError           -> entity absent                     (HTTP 404)
    ValidationError         -> business-rule / identity failure  (HTTP 422)
    InvalidStateTransition  -> terminal-state re-entry           (HTTP 409)
    OwnershipMismatch       -> child references another parent  (HTTP 422)
    ConflictError           -> duplicate key / lost update       (HTTP 409)
    PersistenceError        -> wrapped store failure             (HTTP 500)

Usage:
    from testhub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="TestRun", resource_id=42)
    raise ValidationError("project_id is required", details={"project_id": "empty"})
"""


class NotFoundError(Exception):
    """Raised when a requested entity does not exist.

    Args:
        resource: Entity name (e.g. "TestRun", "FlakyTest").
        resource_id: The key that was looked up.
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

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class EmptyIdentityError(ValidationError):
    """Raised when a required identity field (run id, project id, test name) is empty."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} cannot be empty", details={field: "required"})


class InvalidStateTransition(Exception):
    """Raised when an entity is asked to leave a state it cannot leave.

    Args:
        entity: Entity name.
        current: The state the entity is in.
        target: The state (or action) that was requested.
    """

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity}: cannot transition from {current!r} to {target!r}")


# Lifecycle of a FlakyTest uses the same semantics.
InvalidTransition = InvalidStateTransition


class CannotMutateCompleted(InvalidStateTransition):
    """Raised when a child is appended to a parent that already left ``running``."""

    def __init__(self, entity: str, current: str) -> None:
        super().__init__(entity, current, "add child")


class OwnershipMismatch(Exception):
    """Raised when a child carries a parent id other than the one it is added under."""

    def __init__(self, child: str, expected_parent_id, actual_parent_id) -> None:
        self.child = child
        self.expected_parent_id = expected_parent_id
        self.actual_parent_id = actual_parent_id
        super().__init__(
            f"{child} belongs to parent {actual_parent_id!r}, "
            f"cannot be added under {expected_parent_id!r}"
        )


class ConflictError(Exception):
    """Raised when a write collides with existing state.

    Args:
        resource: Entity name.
        field: The field that collided.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DuplicateKeyError(ConflictError):
    """Unique-constraint violation reported by the store.

    Repositories raise this from ``IntegrityError`` so services never have to
    inspect driver error text.
    """


class ConcurrentUpdateError(ConflictError):
    """Optimistic version check failed: another writer updated the row first."""

    def __init__(self, resource: str, resource_id, expected_version: int) -> None:
        self.resource = resource
        self.field = "version"
        self.value = str(expected_version)
        self.resource_id = resource_id
        self.expected_version = expected_version
        Exception.__init__(
            self,
            f"{resource} id={resource_id} was modified concurrently "
            f"(expected version {expected_version})",
        )


class PersistenceError(Exception):
    """Wrapped store failure. Always names the operation that failed."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        msg = f"{operation} failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
