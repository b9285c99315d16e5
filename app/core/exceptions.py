"""
Engine-wide exception hierarchy.

Services raise these types; the worker decides from the type whether a
failed job is worth retrying.

Usage:
    from app.core.exceptions import NotFoundError, InvalidJobPayloadError

    raise NotFoundError(resource="TestRun", resource_id=42)
    raise InvalidJobPayloadError("repositoryCaseId missing", job_id="17")
"""


class NotFoundError(Exception):
    """Raised when a record that must exist is missing.

    Args:
        resource: Human-readable model name (e.g. "TestRun").
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


class ValidationError(Exception):
    """Raised when input is well-formed but breaks a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class UnrecoverableJobError(ValidationError):
    """Base for job errors that a retry can never fix.

    The queue marks such jobs failed immediately instead of scheduling
    another attempt.
    """

    def __init__(self, message: str, job_id: str | None = None, details: dict | None = None) -> None:
        self.job_id = job_id
        super().__init__(message, details=details)


class InvalidJobPayloadError(UnrecoverableJobError):
    """Job payload is missing a required field or has the wrong type."""


class UnknownJobError(UnrecoverableJobError):
    """Job name has no handler in this worker."""


class QueueUnavailableError(Exception):
    """Queue connection is not configured or cannot be reached."""
