"""Database repositories for data access."""

from streamchat.db.repositories.conversation import (
    count_messages,
    create_conversation,
    create_message,
    get_conversation,
    get_conversation_messages,
    get_recent_messages,
    set_conversation_model,
    touch_conversation,
    update_conversation_title,
    update_message_content,
)

__all__ = [
    # Conversations
    "create_conversation",
    "get_conversation",
    "update_conversation_title",
    "touch_conversation",
    "set_conversation_model",
    # Messages
    "create_message",
    "update_message_content",
    "get_conversation_messages",
    "get_recent_messages",
    "count_messages",
]
