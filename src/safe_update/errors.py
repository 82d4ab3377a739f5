"""
Error types for safe-update.

This module defines the UpdateError base class and the subclasses used by the
update orchestration and quality gate layers. Domain failures are expressed
as UpdateError (or subclasses) carrying a stable error code, a human-readable
message and structured details, so the command surface can report them as
JSON without inspecting exception types.

Recovery policy by type:
- ValidationError: precondition unmet, raised before any mutation.
- GateFailure, CompatibilityError, ApplyError: raised after the snapshot,
  recovered locally by rolling back.
- RollbackError: the restore itself failed. Terminal, never retried.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for safe-update errors.

    Attributes:
        error_code: Internal error code string (e.g., "validation_failed",
            "gate_failure", "rollback_failed").
        message: Human-readable error message.
        details: Optional structured details (e.g., refs, module path).

    Example:
        >>> raise UpdateError(
        ...     error_code="validation_failed",
        ...     message="Module has uncommitted changes",
        ...     details={"module": "services/api"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdateError):
    """
    Error raised for invalid input arguments or invalid state transitions.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(UpdateError):
    """
    Error raised when an operation is attempted in the wrong state.

    Used for programming errors such as snapshotting the same update attempt
    twice, as opposed to ValidationError which reports unmet update
    preconditions.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(UpdateError):
    """
    Error raised when an external tool is missing or does not respond in time.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class RepositoryError(UpdateError):
    """
    Error raised when a version control command fails.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RepositoryError."""
        super().__init__(
            error_code="repository_error", message=message, details=details
        )


class InternalError(UpdateError):
    """
    Error raised for unexpected internal errors.

    Unexpected exceptions raised while a module is being mutated are wrapped
    in InternalError so they follow the same rollback path as domain errors.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class ValidationError(UpdateError):
    """
    Error raised when an update precondition is not met.

    Examples: dirty working tree, missing module, unresolvable target version.
    Raised before any mutation, so there is nothing to roll back.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ValidationError."""
        super().__init__(
            error_code="validation_failed", message=message, details=details
        )


class GateFailure(UpdateError):
    """
    Error raised when a critical quality gate fails after the version switch.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a GateFailure."""
        super().__init__(error_code="gate_failure", message=message, details=details)


class CompatibilityError(UpdateError):
    """
    Error raised when breaking contract changes are detected for an update
    whose strategy requires a compatibility test.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CompatibilityError."""
        super().__init__(
            error_code="compatibility_error", message=message, details=details
        )


class ApplyError(UpdateError):
    """
    Error raised when the version switch does not land on the expected ref.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ApplyError."""
        super().__init__(error_code="apply_failed", message=message, details=details)


class RollbackError(UpdateError):
    """
    Error raised when restoring a rollback point fails.

    This error is fatal: the repository may be in an inconsistent state and
    manual intervention is required. It is never retried automatically.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackError."""
        super().__init__(
            error_code="rollback_failed", message=message, details=details
        )
