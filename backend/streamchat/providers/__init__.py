"""Upstream provider interface and the OpenRouter implementation."""

from streamchat.providers.base import (
    BaseProvider,
    ChatChunk,
    ChatMessage,
    ChatRequest,
    ModelInfo,
)
from streamchat.providers.openrouter import OpenRouterProvider

__all__ = [
    "BaseProvider",
    "ChatChunk",
    "ChatMessage",
    "ChatRequest",
    "ModelInfo",
    "OpenRouterProvider",
]
