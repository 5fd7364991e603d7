"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
get consistent HTTP status codes everywhere.

Usage:
    from hrflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Program", resource_id=42)
    raise ValidationError("Stage mismatch", details={"stage_id": "..."})
"""


class UnauthorizedError(Exception):
    """Raised when the caller lacks identity, role or ownership.

    Maps to HTTP 401 when no identity was presented, 403 otherwise.

    Args:
        message: Human-readable reason (surfaced verbatim to the caller).
        authenticated: False when no viewer could be resolved at all.
    """

    def __init__(self, message: str = "Not authenticated", authenticated: bool = True) -> None:
        self.authenticated = authenticated
        super().__init__(message)


class NotFoundError(Exception):
    """Raised when a requested entity does not exist or is soft-deleted.

    Args:
        resource: Human-readable model name (e.g. "Program", "Process").
        resource_id: The key that was looked up. Included in logs and message.
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
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class SubmissionValidationError(ValidationError):
    """A stage submission failed structural or schema checks."""


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique entity or loses a write race.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class ConfigurationError(Exception):
    """Raised when admin-authored configuration makes an operation impossible.

    Examples: the process points at a stage the pipeline no longer has, or a
    program has no stages. Maps to HTTP 500 and is logged separately from
    ordinary business-rule failures.
    """


class RateLimitedError(Exception):
    """Raised when a caller exceeded a per-action quota. Maps to HTTP 429."""

    def __init__(self, action: str, retry_after_seconds: int) -> None:
        self.action = action
        self.retry_after_seconds = retry_after_seconds
        minutes = max(1, -(-retry_after_seconds // 60))
        super().__init__(f"Rate limit exceeded for {action}. Try again in {minutes} minutes.")


class AutomationLoopDetected(Exception):
    """Raised internally when an automation cascade exceeds its depth limit.

    Never surfaced to end users; the evaluator catches it and records a
    critical audit entry.
    """

    def __init__(self, trigger: str, depth: int) -> None:
        self.trigger = trigger
        self.depth = depth
        super().__init__(f"Automation depth {depth} exceeded for trigger {trigger!r}")
