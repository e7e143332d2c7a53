"""Repository helpers for conversations and messages.

Every write commits on its own; the streaming worker relies on each
checkpoint being durable independently of the ones that follow.
"""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from streamchat.core.time import utcnow
from streamchat.db.models import DEFAULT_CONVERSATION_TITLE, Conversation, Message


def create_conversation(
    db: Session,
    title: str | None = None,
    model: str | None = None,
    system_prompt: str | None = None,
    *,
    default_title: str = DEFAULT_CONVERSATION_TITLE,
) -> Conversation:
    """Create a new conversation."""
    conversation = Conversation(
        title=title.strip() if title and title.strip() else default_title,
        model=model,
        system_prompt=system_prompt,
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def get_conversation(db: Session, conversation_id: str) -> Conversation | None:
    """Fetch a conversation by id."""
    return db.get(Conversation, conversation_id)


def update_conversation_title(
    db: Session, conversation: Conversation, title: str
) -> Conversation:
    """Rename a conversation and bump its activity timestamp."""
    conversation.title = title
    conversation.last_activity = utcnow()
    db.commit()
    db.refresh(conversation)
    return conversation


def touch_conversation(db: Session, conversation: Conversation) -> Conversation:
    """Bump the conversation's last activity timestamp."""
    conversation.last_activity = utcnow()
    db.commit()
    db.refresh(conversation)
    return conversation


def set_conversation_model(
    db: Session, conversation: Conversation, model: str
) -> Conversation:
    """Record the model used for the latest turn."""
    if conversation.model != model:
        conversation.model = model
        db.commit()
        db.refresh(conversation)
    return conversation


def create_message(
    db: Session,
    conversation_id: str,
    role: str,
    content: str,
) -> Message:
    """Insert a chat message."""
    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def update_message_content(db: Session, message: Message, content: str) -> Message:
    """Overwrite the content of an existing message."""
    message.content = content
    db.commit()
    return message


def get_conversation_messages(db: Session, conversation_id: str) -> list[Message]:
    """Get all messages for a conversation ordered by creation time."""
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


def get_recent_messages(
    db: Session, conversation_id: str, limit: int
) -> list[Message]:
    """Get the ``limit`` most recent messages, oldest first."""
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    recent = list(db.execute(stmt).scalars().all())
    recent.reverse()
    return recent


def count_messages(db: Session, conversation_id: str) -> int:
    """Count messages stored for a conversation."""
    stmt = select(func.count(Message.id)).where(
        Message.conversation_id == conversation_id
    )
    return int(db.execute(stmt).scalar_one())
