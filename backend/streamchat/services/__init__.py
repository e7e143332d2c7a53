"""
Business logic services.

The streaming orchestrator and the components it drives: token stream
source, batching, broadcast, SSE writer, persistence, titles and model
resolution.
"""

from streamchat.services.broadcast import BroadcastHub, channel_name
from streamchat.services.chat_service import ChatService, ChatStream
from streamchat.services.models import ModelCatalog, ModelResolver

__all__ = [
    "BroadcastHub",
    "ChatService",
    "ChatStream",
    "ModelCatalog",
    "ModelResolver",
    "channel_name",
]
