"""Error hierarchy for the attendance core.

Every failure surfaced by the verifier, the punch ledger or the
reconciliation engine is an ``AttendanceError`` carrying enough detail
for the caller to decide whether to retry, switch verification method,
or escalate to a supervisor. The API layer maps ``status_code`` onto
the HTTP response.
"""

from typing import Any


class AttendanceError(Exception):
    """Base class for all typed attendance errors.

    Args:
        message: Human-readable description of the failure.
        error_code: Machine-readable code (defaults to the class code).
        details: Extra context for the caller.
    """

    status_code = 400
    error_code = "AttendanceError"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API response."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ValidationError(AttendanceError):
    """Malformed or missing required input. Never retried automatically."""

    status_code = 400
    error_code = "ValidationFailed"


class DimensionMismatchError(ValidationError):
    """Face descriptors of differing length were compared."""

    error_code = "DimensionMismatch"


class SequenceError(AttendanceError):
    """Punch alternation would be violated. Needs a human correction."""

    status_code = 409
    error_code = "InvalidSequence"


class VerificationError(AttendanceError):
    """Identity could not be verified. Retry or switch method."""

    status_code = 401
    error_code = "VerificationFailed"


class NoReferenceDescriptorError(VerificationError):
    """Face verification attempted without a stored reference descriptor."""

    error_code = "NoReferenceDescriptor"


class InvalidCredentialError(VerificationError):
    """Supplied PIN did not match the stored hash."""

    error_code = "InvalidCredential"


class AccountInactiveError(AttendanceError):
    """The agent behind an enrollment is deactivated."""

    status_code = 403
    error_code = "AccountInactive"


class NotFoundError(AttendanceError):
    """Unknown enrollment, punch or agent."""

    status_code = 404
    error_code = "NotFound"


class StateConflict(AttendanceError):
    """A concurrent punch for the same enrollment won the race.

    Callers should retry once after a short delay.
    """

    status_code = 409
    error_code = "StateConflict"
