"""
Governance-engine exception hierarchy.

Services raise these types for explicit user actions (decisions, bypass,
administrative configuration). Best-effort side effects never raise them to
the caller of ``track_change``; those are reported through the outcome types
in ``change_governance.services.outcomes``.

Usage:
    from change_governance.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ChangeEvent", resource_id=42)
    raise ValidationError("Step numbers must start at 1", details={"approval_steps": "..."})
"""


class NotFoundError(Exception):
    """Raised when a referenced change event, approval, workflow or user does not exist.

    Args:
        resource: Human-readable model name (e.g. "ChangeEvent", "Approval").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class AuthorizationError(Exception):
    """Raised when an actor lacks the role required for an operation.

    Emergency bypass is the main caller: the acting user's role must be in
    the workflow's bypass roles or be the administrator role.

    Args:
        message: Human-readable explanation.
        actor_id: The user who attempted the operation.
        role: The role the actor holds.
    """

    def __init__(self, message: str, actor_id: int | None = None, role: str | None = None) -> None:
        self.actor_id = actor_id
        self.role = role
        super().__init__(message)


class ValidationError(Exception):
    """Raised when administrative input violates a business rule.

    Examples: non-contiguous workflow step numbers, an invalid regular
    expression in a propagation rule, an unknown decision value.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a record.

    Args:
        resource: Model name.
        field: The field whose current value blocks the operation.
        value: The current (conflicting) value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} has {field}={value!r}; operation not allowed in this state"
        super().__init__(msg)
