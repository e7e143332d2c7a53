"""Core module with logging, errors, metrics, and middleware."""

from streamchat.core.errors import (
    AppError,
    ConversationNotFoundError,
    ErrorCode,
    ErrorResponse,
    ModelNotFoundError,
    NotFoundError,
    ProviderAuthError,
    ProviderBadResponseError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
    ServiceUnavailableError,
    StreamAbortError,
    StreamTimeoutError,
    TitleGenerationError,
    ValidationError,
)
from streamchat.core.logging import (
    conversation_id_ctx,
    get_logger,
    request_id_ctx,
    setup_logging,
    stream_id_ctx,
)

__all__ = [
    # Errors
    "AppError",
    "ConversationNotFoundError",
    "ErrorCode",
    "ErrorResponse",
    "ModelNotFoundError",
    "NotFoundError",
    "ProviderAuthError",
    "ProviderBadResponseError",
    "ProviderError",
    "ProviderUnavailableError",
    "RateLimitError",
    "ServiceUnavailableError",
    "StreamAbortError",
    "StreamTimeoutError",
    "TitleGenerationError",
    "ValidationError",
    # Logging
    "conversation_id_ctx",
    "get_logger",
    "request_id_ctx",
    "setup_logging",
    "stream_id_ctx",
]
