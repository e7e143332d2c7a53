"""API routers."""

from streamchat.api.chat import router as chat_router
from streamchat.api.health import router as health_router

__all__ = [
    "chat_router",
    "health_router",
]
