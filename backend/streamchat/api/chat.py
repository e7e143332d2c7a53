"""Conversation, streaming chat, and channel subscription endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from streamchat.config import get_settings
from streamchat.core import ConversationNotFoundError, ServiceUnavailableError
from streamchat.core.logging import conversation_id_ctx, request_id_ctx
from streamchat.db import get_db
from streamchat.db.repositories import (
    create_conversation,
    get_conversation,
    get_conversation_messages,
)
from streamchat.services.broadcast import BroadcastHub, channel_name
from streamchat.services.chat_service import ChatService
from streamchat.services.sse import SSE_HEADERS, subscription_frames

router = APIRouter(tags=["chat"])


class CreateConversationRequest(BaseModel):
    title: str | None = Field(None, max_length=255)
    model: str | None = Field(None, max_length=128)
    system_prompt: str | None = Field(None, max_length=4000)


class ConversationResponse(BaseModel):
    id: str
    title: str
    model: str | None
    system_prompt: str | None
    last_activity: str | None
    created_at: str
    updated_at: str


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    created_at: str


class StreamMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    model: str | None = Field(None, max_length=128)


def get_chat_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        raise ServiceUnavailableError("Chat service is not ready")
    return service


def get_broadcast_hub(request: Request) -> BroadcastHub:
    hub = getattr(request.app.state, "broadcast_hub", None)
    if hub is None:
        raise ServiceUnavailableError("Broadcast hub is not ready")
    return hub


def _conversation_to_response(conversation: Any) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        model=conversation.model,
        system_prompt=conversation.system_prompt,
        last_activity=(
            conversation.last_activity.isoformat() if conversation.last_activity else None
        ),
        created_at=conversation.created_at.isoformat(),
        updated_at=conversation.updated_at.isoformat(),
    )


def _message_to_response(message: Any) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        created_at=message.created_at.isoformat(),
    )


def _stream_headers() -> dict[str, str]:
    headers = dict(SSE_HEADERS)
    request_id = request_id_ctx.get()
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


@router.post("/conversations", status_code=201)
def create_conversation_route(
    body: CreateConversationRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    conversation = create_conversation(
        db,
        title=body.title,
        model=body.model,
        system_prompt=body.system_prompt,
        default_title=get_settings().default_conversation_title,
    )
    return {"conversation": _conversation_to_response(conversation)}


@router.get("/conversations/{conversation_id}")
def get_conversation_route(
    conversation_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise ConversationNotFoundError(conversation_id)
    return {"conversation": _conversation_to_response(conversation)}


@router.get("/conversations/{conversation_id}/messages")
def list_messages_route(
    conversation_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise ConversationNotFoundError(conversation_id)
    messages = get_conversation_messages(db, conversation_id)
    return {
        "conversation_id": conversation_id,
        "messages": [_message_to_response(msg) for msg in messages],
    }


@router.post("/conversations/{conversation_id}/messages/stream")
async def stream_message_route(
    conversation_id: str,
    body: StreamMessageRequest = Body(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    conversation_id_ctx.set(conversation_id)
    stream = await chat_service.stream_message(
        conversation_id=conversation_id,
        message=body.message,
        model=body.model,
        request_id=request_id_ctx.get(),
    )
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers=_stream_headers(),
    )


@router.get("/conversations/{conversation_id}/events")
async def subscribe_events_route(
    conversation_id: str,
    db: Session = Depends(get_db),
    hub: BroadcastHub = Depends(get_broadcast_hub),
) -> StreamingResponse:
    if not get_conversation(db, conversation_id):
        raise ConversationNotFoundError(conversation_id)
    subscription = hub.subscribe(channel_name(conversation_id))
    return StreamingResponse(
        subscription_frames(subscription, get_settings().sse_ping_interval_seconds),
        media_type="text/event-stream",
        headers=_stream_headers(),
    )
