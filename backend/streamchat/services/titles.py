"""Conversation title sub-orchestrator.

After the main stream completes, a second stream may generate a new title.
It uses the title throttle profile and tags every event ``isTitle``. It never
fails the outer request: errors are logged and the activity timestamp is
still bumped.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum

from sqlalchemy.orm import Session

from streamchat.config import Settings, get_settings
from streamchat.core import TitleGenerationError, get_logger
from streamchat.core.metrics import metrics
from streamchat.db.models import DEFAULT_CONVERSATION_TITLE, Conversation, Message
from streamchat.db.repositories import (
    count_messages,
    get_recent_messages,
    touch_conversation,
    update_conversation_title,
)
from streamchat.providers.base import BaseProvider, ChatMessage, ChatRequest
from streamchat.services.batching import BatchAggregator, FlushBatch, ThrottleProfile
from streamchat.services.broadcast import BroadcastEvent, BroadcastSink
from streamchat.services.prompts import (
    GREETING_FRAMING,
    SHORT_MESSAGE_FRAMING,
    SHORT_MESSAGE_LENGTH,
    TITLE_SYSTEM_PROMPT,
    build_title_prompt,
)
from streamchat.services.sse import SSEWriter
from streamchat.services.stream_source import Delta, StreamFailure, TokenStream

logger = get_logger(__name__)

GREETINGS = frozenset({"hello", "hi", "hey", "bonjour", "salut", "coucou"})
TITLE_TEMPERATURE = 0.5
_TITLE_STRIP = str.maketrans("", "", "\"'.!?")
_WORD = re.compile(r"\w+")


class TitleDecision(str, Enum):
    SKIP = "skip"
    GENERATE = "generate"


def should_generate_title(
    title: str,
    message_count: int,
    *,
    default_title: str = DEFAULT_CONVERSATION_TITLE,
    regen_every: int = 7,
) -> TitleDecision:
    """Generate for untitled or young conversations, and every ``regen_every`` messages."""
    if (
        title == default_title
        or message_count <= 2
        or message_count % regen_every == 0
    ):
        return TitleDecision.GENERATE
    return TitleDecision.SKIP


def build_title_context(messages: Sequence[Message]) -> str:
    """Newline-joined contents, oldest first."""
    return "\n".join(message.content for message in messages if message.content)


def is_greeting(text: str) -> bool:
    return any(word in GREETINGS for word in _WORD.findall(text.lower()))


def enrich_short_context(context: str) -> str:
    """Frame a very short opening so the model has something to title."""
    stripped = context.strip()
    if len(stripped) >= SHORT_MESSAGE_LENGTH:
        return context
    if is_greeting(stripped):
        return GREETING_FRAMING.format(message=stripped)
    return SHORT_MESSAGE_FRAMING.format(message=stripped)


def clean_title(text: str) -> str:
    """Drop quotes and terminal punctuation, then trim."""
    return text.translate(_TITLE_STRIP).strip()


class TitleGenerator:
    """Runs the title stream for one conversation."""

    def __init__(
        self,
        provider: BaseProvider,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.settings = settings or get_settings()
        self.profile = ThrottleProfile.title(self.settings)
        self._sleep = sleep
        self._clock = clock

    def decide(self, db: Session, conversation: Conversation) -> TitleDecision:
        return should_generate_title(
            conversation.title,
            count_messages(db, conversation.id),
            default_title=self.settings.default_conversation_title,
            regen_every=self.settings.title_regen_every,
        )

    async def run(
        self,
        db: Session,
        conversation: Conversation,
        sink: BroadcastSink,
        writer: SSEWriter | None = None,
        deadline: float | None = None,
    ) -> str | None:
        """Generate and store a title when due. Returns the new title, if any."""
        if self.decide(db, conversation) is TitleDecision.SKIP:
            touch_conversation(db, conversation)
            return None

        try:
            title = await self._generate(db, conversation, sink, writer, deadline)
        except Exception as exc:
            db.rollback()
            error = (
                exc
                if isinstance(exc, TitleGenerationError)
                else TitleGenerationError(details={"reason": str(exc) or exc.__class__.__name__})
            )
            metrics.increment("title_failures")
            logger.warning(
                "Title generation failed",
                exc_info=exc,
                data={
                    "conversation_id": conversation.id,
                    "code": error.code.value,
                    "details": error.details,
                },
            )
            title = None

        if not title:
            touch_conversation(db, conversation)
        return title or None

    async def _generate(
        self,
        db: Session,
        conversation: Conversation,
        sink: BroadcastSink,
        writer: SSEWriter | None,
        deadline: float | None,
    ) -> str:
        recent = get_recent_messages(db, conversation.id, self.settings.title_context_messages)
        context = build_title_context(recent)
        if len(context.split("\n")) <= 2:
            context = enrich_short_context(context)

        request = ChatRequest(
            messages=[
                ChatMessage(role="system", content=TITLE_SYSTEM_PROMPT),
                ChatMessage(role="user", content=build_title_prompt(context)),
            ],
            model=self.settings.default_model,
            temperature=TITLE_TEMPERATURE,
        )
        aggregator = BatchAggregator(self.profile, is_title=True, clock=self._clock)
        stream = TokenStream(self.provider.chat_stream(request), deadline=deadline)

        try:
            while True:
                wait = writer.seconds_until_ping() if writer else None
                outcome = await stream.next(wait=wait)
                if outcome is None:
                    if writer:
                        writer.ping_if_due()
                    continue
                if isinstance(outcome, StreamFailure):
                    raise TitleGenerationError(
                        details={
                            "code": outcome.error.code.value,
                            "reason": outcome.error.message,
                        }
                    ) from outcome.error
                if not isinstance(outcome, Delta):
                    break
                batch = aggregator.add(outcome.text)
                if batch is not None:
                    await self._emit(batch, sink, writer)
        finally:
            await stream.aclose()

        batch = aggregator.drain()
        if batch is not None:
            await self._emit(batch, sink, writer)

        title = clean_title(aggregator.full)
        if not title:
            logger.info(
                "Title stream produced no usable text",
                data={"conversation_id": conversation.id},
            )
            return ""

        update_conversation_title(db, conversation, title)
        final = aggregator.complete(title)
        sink.emit(final)
        if writer:
            writer.send_event(BroadcastEvent.from_batch(final))
        metrics.increment("titles_generated")
        logger.info(
            "Conversation title updated",
            data={"conversation_id": conversation.id, "title": title},
        )
        return title

    async def _emit(
        self, batch: FlushBatch, sink: BroadcastSink, writer: SSEWriter | None
    ) -> None:
        sink.emit(batch)
        if writer:
            writer.send_event(BroadcastEvent.from_batch(batch))
        if self.profile.pacing_ms:
            await self._sleep(self.profile.pacing_ms / 1000.0)
