"""Database models, engine, and session management."""

from streamchat.db.base import Base, TimestampMixin
from streamchat.db.engine import dispose_engine, get_engine, verify_database_connection
from streamchat.db.models import Conversation, Message
from streamchat.db.session import get_db, get_session_factory, reset_session_factory

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Engine
    "get_engine",
    "verify_database_connection",
    "dispose_engine",
    # Session
    "get_db",
    "get_session_factory",
    "reset_session_factory",
    # Models
    "Conversation",
    "Message",
]
