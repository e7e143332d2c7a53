"""
Base provider interface.

Defines the contract the upstream language-model provider must implement.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

FREE_MODEL_SUFFIX = ":free"


@dataclass
class ModelInfo:
    """Information about an available model."""

    id: str
    name: str
    context_length: int = 0
    max_completion_tokens: int = 0
    pricing: dict[str, Any] = field(default_factory=dict)

    @property
    def is_free(self) -> bool:
        return self.id.endswith(FREE_MODEL_SUFFIX)


@dataclass
class ChatMessage:
    """A single chat message."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class ChatRequest:
    """Request for a streamed chat completion."""

    messages: list[ChatMessage]
    model: str
    temperature: float = 0.7
    max_tokens: int | None = 2048
    top_p: float | None = 1.0
    presence_penalty: float | None = 0.5
    frequency_penalty: float | None = 0.5
    stream: bool = True

    def to_payload(self) -> dict[str, Any]:
        """Serialize to an OpenAI-compatible request body."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
            "temperature": self.temperature,
            "stream": self.stream,
        }
        optional = {
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


@dataclass
class ChatChunk:
    """A single chunk from a streaming response."""

    content: str | None
    finish_reason: str | None = None
    model: str | None = None


class BaseProvider(ABC):
    """
    Abstract base class for upstream providers.

    The orchestrator treats a provider as an opaque token-stream source
    whose only failure mode is an error raised from the stream.
    """

    display_name: str = "provider"

    async def aclose(self) -> None:
        """Close any underlying resources (optional)."""
        return None

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """
        List all models exposed by this provider.

        Returns:
            List of ModelInfo objects describing available models
        """
        ...

    @abstractmethod
    def chat_stream(self, request: ChatRequest) -> AsyncIterator[ChatChunk]:
        """
        Send a chat request and stream the response.

        Args:
            request: ChatRequest with messages and parameters

        Yields:
            ChatChunk objects as they arrive

        Raises:
            ProviderError: If the provider returns an error
            ProviderUnavailableError: If the provider is not available
        """
        ...
