"""Error handling module for devhub.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "PROVISIONING_FAILED",
        "message": "Instance provisioning failed"
    }
}

Error classes map onto how the control plane treats each failure:
- ProvisioningError / ReadinessTimeoutError: fatal, propagated to the caller
- AgentUnavailableError: liveness failure; the instance is evicted
- InvalidRepositoryError / RepositoryNotFoundError: repository import input

Pool exhaustion and integrity mismatches are not errors: the first falls
back to cold provisioning, the second is repaired silently.

Usage:
    from devhub.core.errors import ProvisioningError

    raise ProvisioningError(f"Machine {machine_id} entered state failed")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    READINESS_TIMEOUT = "READINESS_TIMEOUT"
    AGENT_UNAVAILABLE = "AGENT_UNAVAILABLE"
    INVALID_REPOSITORY = "INVALID_REPOSITORY"
    REPOSITORY_NOT_FOUND = "REPOSITORY_NOT_FOUND"
    BATCH_LIMIT_EXCEEDED = "BATCH_LIMIT_EXCEEDED"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class DevHubError(Exception):
    """Base exception for devhub.

    All devhub specific exceptions inherit from this class so the
    application shell can map them to a JSON response in one place.

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


class ProvisioningError(DevHubError):
    """502 Bad Gateway - Instance could not be created or started."""

    def __init__(self, message: str = "Instance provisioning failed") -> None:
        super().__init__(ErrorCode.PROVISIONING_FAILED, message, 502)


class ReadinessTimeoutError(ProvisioningError):
    """504 Gateway Timeout - Instance never became ready before the deadline."""

    def __init__(self, message: str = "Instance did not become ready in time") -> None:
        DevHubError.__init__(self, ErrorCode.READINESS_TIMEOUT, message, 504)


class AgentUnavailableError(DevHubError):
    """502 Bad Gateway - On-instance agent did not respond."""

    def __init__(self, message: str = "Instance agent unavailable") -> None:
        super().__init__(ErrorCode.AGENT_UNAVAILABLE, message, 502)


class InvalidRepositoryError(DevHubError):
    """400 Bad Request - Repository URL could not be parsed."""

    def __init__(self, message: str = "Invalid repository URL") -> None:
        super().__init__(ErrorCode.INVALID_REPOSITORY, message, 400)


class RepositoryNotFoundError(DevHubError):
    """401 Unauthorized - Repository not found or private.

    The archive host answers 404 for private repositories, so the caller
    is told to retry with credentials.
    """

    requires_auth = True

    def __init__(self, message: str = "Repository not found or private") -> None:
        super().__init__(ErrorCode.REPOSITORY_NOT_FOUND, message, 401)


class BatchLimitExceededError(DevHubError):
    """413 Payload Too Large - Batch exceeds the store's per-transaction limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            ErrorCode.BATCH_LIMIT_EXCEEDED,
            f"Batch of {size} writes exceeds limit of {limit}",
            413,
        )
