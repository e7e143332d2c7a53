"""
Structured error handling with stable error codes.

No stack traces are exposed to clients. All errors are mapped to
stable, documented error codes for reliable client handling.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for API responses."""

    # General errors
    INTERNAL_ERROR = "ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    RATE_LIMITED = "RATE_LIMITED"

    # Provider errors
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_BAD_RESPONSE = "PROVIDER_BAD_RESPONSE"
    PROVIDER_AUTH_FAILED = "PROVIDER_AUTH_FAILED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"

    # Streaming errors
    STREAM_ERROR = "STREAM_ERROR"
    TIMEOUT = "TIMEOUT"
    TITLE_ERROR = "TITLE_ERROR"

    # Resource errors
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


@dataclass(frozen=True)
class ErrorResponse:
    """Structured error response for API.

    Format: {error, code, request_id?, details?}
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        body: dict[str, Any] = {
            "error": self.message,
            "code": self.code.value,
        }
        if self.request_id:
            body["request_id"] = self.request_id
        if self.details:
            body["details"] = self.details
        return body


class AppError(Exception):
    """Base application error with structured error detail."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        """Create error response with request ID."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            request_id=request_id,
            details=self.details,
        )


# Convenience error classes
class ValidationError(AppError):
    """Validation error (422)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 422, details)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        message: str = "Resource not found",
        details: dict[str, Any] | None = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        super().__init__(code, message, 404, details)


class ConversationNotFoundError(NotFoundError):
    """Conversation does not exist (404)."""

    def __init__(self, conversation_id: str):
        super().__init__(
            "Conversation not found",
            {"conversation_id": conversation_id},
            code=ErrorCode.CONVERSATION_NOT_FOUND,
        )


class RateLimitError(AppError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.RATE_LIMITED, message, 429, details)


class ProviderError(AppError):
    """Provider error (502)."""

    def __init__(
        self, message: str = "Provider error", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_ERROR, message, 502, details)


class ProviderUnavailableError(AppError):
    """Provider unavailable (503)."""

    def __init__(
        self, message: str = "Provider unavailable", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_UNAVAILABLE, message, 503, details)


class ProviderBadResponseError(AppError):
    """Provider returned malformed response (502)."""

    def __init__(
        self, message: str = "Provider returned invalid response", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_BAD_RESPONSE, message, 502, details)


class ProviderAuthError(AppError):
    """Provider authentication failed (401/403)."""

    def __init__(
        self,
        message: str = "Provider authentication failed",
        status_code: int = 401,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.PROVIDER_AUTH_FAILED, message, status_code, details)


class ModelNotFoundError(AppError):
    """Requested model not found (404)."""

    def __init__(self, message: str = "Model not found", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.MODEL_NOT_FOUND, message, 404, details)


class StreamAbortError(AppError):
    """Upstream stream stopped mid-sequence (500)."""

    def __init__(self, message: str = "Stream aborted", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.STREAM_ERROR, message, 500, details)


class StreamTimeoutError(AppError):
    """Pipeline exceeded its wall-clock ceiling (504)."""

    def __init__(self, message: str = "Stream timed out", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.TIMEOUT, message, 504, details)


class TitleGenerationError(AppError):
    """Title generation failed. Always recovered locally."""

    def __init__(self, message: str = "Title generation failed", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.TITLE_ERROR, message, 500, details)


class ServiceUnavailableError(AppError):
    """A required application component is not initialized."""

    def __init__(self, message: str = "Service unavailable"):
        super().__init__(ErrorCode.SERVICE_UNAVAILABLE, message, 503)
