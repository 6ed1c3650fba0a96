"""Error handling module for licensehub.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Usage:
    from licensehub.core.errors import ConflictError, NotFoundError

    # Raise with default message
    raise NotFoundError()

    # Raise with custom message
    raise ConflictError("Instance is already running")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    UNAVAILABLE = "UNAVAILABLE"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    FORBIDDEN = "FORBIDDEN"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class LicenseHubError(Exception):
    """Base exception for licensehub.

    All licensehub specific exceptions inherit from this class so the
    dispatcher and FastAPI can map them to a status code in one place.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class NotFoundError(LicenseHubError):
    """404 Not Found - No such instance, session or reservation."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(ErrorCode.NOT_FOUND, message, 404)


class ConflictError(LicenseHubError):
    """409 Conflict - Duplicate create, already running, concurrent operation."""

    def __init__(self, message: str = "Conflicting state") -> None:
        super().__init__(ErrorCode.CONFLICT, message, 409)


class UnavailableError(LicenseHubError):
    """409 Conflict - No license capacity after preemption attempt."""

    def __init__(self, message: str = "No licenses available for the requested time period") -> None:
        super().__init__(ErrorCode.UNAVAILABLE, message, 409)


class PolicyViolationError(LicenseHubError):
    """403 Forbidden - License policy forbids the operation right now."""

    def __init__(self, message: str = "Operation not permitted by license policy") -> None:
        super().__init__(ErrorCode.POLICY_VIOLATION, message, 403)


class ValidationError(LicenseHubError):
    """400 Bad Request - Malformed time window, unknown license type, bad field."""

    def __init__(self, message: str = "Invalid request") -> None:
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 400)


class UpstreamFailureError(LicenseHubError):
    """502 Bad Gateway - A collaborator call failed."""

    def __init__(self, message: str = "Upstream service failed") -> None:
        super().__init__(ErrorCode.UPSTREAM_FAILURE, message, 502)


class ForbiddenError(LicenseHubError):
    """403 Forbidden - Caller is neither the owner nor an admin."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(ErrorCode.FORBIDDEN, message, 403)
