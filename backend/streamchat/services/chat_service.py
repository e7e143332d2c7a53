"""Chat orchestration: one streaming worker per request.

The worker pulls outcomes from the token stream, re-batches deltas, and fans
every flush out to the conversation channel and to the live SSE writer. The
assistant message is created empty before the stream opens and is settled on
every exit path. A client disconnect only detaches the writer; the worker
keeps running so persistence and broadcasting complete.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from streamchat.config import Settings, get_settings
from streamchat.core import (
    AppError,
    ConversationNotFoundError,
    ErrorCode,
    StreamAbortError,
    StreamTimeoutError,
    ValidationError,
    conversation_id_ctx,
    get_logger,
    stream_id_ctx,
)
from streamchat.core.metrics import metrics
from streamchat.db.models import Conversation, Message
from streamchat.db.repositories import (
    create_message,
    get_conversation,
    get_conversation_messages,
    set_conversation_model,
)
from streamchat.providers.base import BaseProvider, ChatMessage, ChatRequest
from streamchat.services.batching import BatchAggregator, FlushBatch, ThrottleProfile
from streamchat.services.broadcast import BroadcastEvent, BroadcastHub, BroadcastSink
from streamchat.services.models import ModelResolver
from streamchat.services.persistence import AssistantDraft
from streamchat.services.prompts import build_chat_system_prompt, enrich_short_user_message
from streamchat.services.sse import QueueTransport, SSEWriter
from streamchat.services.stream_source import (
    Delta,
    StreamEnd,
    StreamFailure,
    StreamOutcome,
    TokenStream,
)
from streamchat.services.titles import TitleGenerator

logger = get_logger(__name__)

USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.STREAM_ERROR: "The response was interrupted. Please try again.",
    ErrorCode.TIMEOUT: "The response took too long. Please try again.",
    ErrorCode.PROVIDER_UNAVAILABLE: (
        "The model is temporarily unavailable, please try another model."
    ),
    ErrorCode.INTERNAL_ERROR: "An error occurred while generating the response.",
}

# Errors on stream open that keep their own status; everything else is a 500.
_OPEN_ERROR_CODES = {
    ErrorCode.PROVIDER_UNAVAILABLE,
    ErrorCode.TIMEOUT,
    ErrorCode.STREAM_ERROR,
}


def user_message_for(code: ErrorCode) -> str:
    return USER_MESSAGES.get(code, USER_MESSAGES[ErrorCode.INTERNAL_ERROR])


@dataclass
class ActiveStream:
    """Metadata for an in-flight stream worker."""

    stream_id: str
    conversation_id: str
    started_at: float
    task: asyncio.Task[None]


class ActiveStreamManager:
    """Tracks running workers so shutdown can wait for them."""

    def __init__(self) -> None:
        self._streams: dict[str, ActiveStream] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._streams)

    async def register(
        self, stream_id: str, conversation_id: str, task: asyncio.Task[None]
    ) -> None:
        async with self._lock:
            self._streams[stream_id] = ActiveStream(
                stream_id=stream_id,
                conversation_id=conversation_id,
                started_at=time.monotonic(),
                task=task,
            )
            metrics.set_gauge("active_streams", float(len(self._streams)))

    async def unregister(self, stream_id: str) -> ActiveStream | None:
        async with self._lock:
            stream = self._streams.pop(stream_id, None)
            metrics.set_gauge("active_streams", float(len(self._streams)))
        return stream

    async def drain(self, timeout: float = 10.0) -> int:
        """Wait for running workers, cancelling those still busy after ``timeout``.

        Returns the number of workers that had to be cancelled.
        """
        async with self._lock:
            tasks = [stream.task for stream in self._streams.values() if not stream.task.done()]
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
            logger.warning(
                "Cancelled stream workers on shutdown", data={"count": len(pending)}
            )
        return len(pending)


@dataclass
class ChatStream:
    """Handle returned to the HTTP layer for one streaming response."""

    stream_id: str
    conversation_id: str
    model: str
    assistant_message_id: str
    transport: QueueTransport
    task: asyncio.Task[None]

    def frames(self) -> AsyncIterator[str]:
        return self.transport.frames()


@dataclass
class _Pipeline:
    stream_id: str
    db: Session
    conversation: Conversation
    assistant: Message
    stream: TokenStream
    sink: BroadcastSink
    writer: SSEWriter
    deadline: float


class ChatService:
    """Validates chat turns and runs their streaming workers."""

    def __init__(
        self,
        provider: BaseProvider,
        hub: BroadcastHub,
        resolver: ModelResolver,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.hub = hub
        self.resolver = resolver
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.manager = ActiveStreamManager()
        self.titles = TitleGenerator(provider, self.settings, sleep=sleep, clock=clock)
        self._clock = clock

    def validate_message(self, message: str) -> str:
        """Return the trimmed message or raise ``ValidationError``."""
        if message is None or not message.strip():
            raise ValidationError("Message cannot be empty")
        limit = self.settings.message_max_length
        if len(message) > limit:
            raise ValidationError(
                f"Message must be at most {limit} characters",
                details={"max_length": limit, "length": len(message)},
            )
        return message.strip()

    async def stream_message(
        self,
        conversation_id: str,
        message: str,
        model: str | None = None,
        request_id: str | None = None,
    ) -> ChatStream:
        """Persist the user turn, open the provider stream and start the worker.

        Raises before any response byte is written when the input is invalid,
        the conversation is unknown, or the provider fails on open.
        """
        content = self.validate_message(message)

        db = self.session_factory()
        handed_off = False
        try:
            conversation = get_conversation(db, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            create_message(db, conversation_id, "user", content)
            history = get_conversation_messages(db, conversation_id)
            resolved = await self.resolver.resolve(model or conversation.model)
            set_conversation_model(db, conversation, resolved)
            assistant = create_message(db, conversation_id, "assistant", "")

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.settings.stream_timeout_seconds
            request = self._build_request(conversation, history, resolved)
            stream = TokenStream(self.provider.chat_stream(request), deadline=deadline)
            sink = BroadcastSink(self.hub, conversation_id)

            try:
                first = await stream.prime()
            except BaseException:
                await stream.aclose()
                raise
            if not isinstance(first, Delta):
                await stream.aclose()
                error = self._open_error(first)
                metrics.increment(
                    "stream_timeouts" if error.code is ErrorCode.TIMEOUT else "stream_errors"
                )
                logger.error(
                    "Provider stream failed to open",
                    data={
                        "conversation_id": conversation_id,
                        "model": resolved,
                        "code": error.code.value,
                        "details": error.details,
                    },
                )
                sink.emit_error(user_message_for(error.code))
                raise error

            stream_id = str(uuid.uuid4())
            transport = QueueTransport()
            writer = SSEWriter(
                transport,
                ping_interval=self.settings.sse_ping_interval_seconds,
                clock=self._clock,
            )
            pipeline = _Pipeline(
                stream_id=stream_id,
                db=db,
                conversation=conversation,
                assistant=assistant,
                stream=stream,
                sink=sink,
                writer=writer,
                deadline=deadline,
            )
            task = asyncio.create_task(self._run_pipeline(pipeline))
            await self.manager.register(stream_id, conversation_id, task)
            handed_off = True

            logger.info(
                "Chat stream started",
                data={
                    "stream_id": stream_id,
                    "conversation_id": conversation_id,
                    "model": resolved,
                    "request_id": request_id,
                },
            )
            return ChatStream(
                stream_id=stream_id,
                conversation_id=conversation_id,
                model=resolved,
                assistant_message_id=assistant.id,
                transport=transport,
                task=task,
            )
        finally:
            if not handed_off:
                db.close()

    async def shutdown(self, timeout: float = 10.0) -> None:
        await self.manager.drain(timeout)

    async def _run_pipeline(self, pipeline: _Pipeline) -> None:
        stream_token = stream_id_ctx.set(pipeline.stream_id)
        conversation_token = conversation_id_ctx.set(pipeline.conversation.id)
        started = time.monotonic()
        writer = pipeline.writer
        sink = pipeline.sink
        aggregator = BatchAggregator(ThrottleProfile.main(self.settings), clock=self._clock)
        try:
            with AssistantDraft(
                pipeline.db,
                pipeline.assistant,
                aggregator,
                checkpoint_interval=self.settings.persist_interval_seconds,
                clock=self._clock,
            ) as draft:
                try:
                    await self._respond(pipeline, aggregator, draft)
                except asyncio.CancelledError:
                    logger.warning(
                        "Chat stream worker cancelled", data={"stream_id": pipeline.stream_id}
                    )
                    # The writer is being torn down; only channel observers are settled.
                    if not aggregator.completed:
                        self._interrupt(aggregator, sink, None, ErrorCode.STREAM_ERROR)
                    raise
                except Exception as exc:
                    metrics.increment("stream_errors")
                    logger.exception(
                        "Unexpected error during chat stream",
                        exc_info=exc,
                        data={
                            "stream_id": pipeline.stream_id,
                            "conversation_id": pipeline.conversation.id,
                        },
                    )
                    self._interrupt(aggregator, sink, writer, ErrorCode.INTERNAL_ERROR)
        finally:
            await pipeline.stream.aclose()
            writer.close()
            pipeline.db.close()
            await self.manager.unregister(pipeline.stream_id)
            metrics.observe("stream_duration_seconds", time.monotonic() - started)
            conversation_id_ctx.reset(conversation_token)
            stream_id_ctx.reset(stream_token)

    async def _respond(
        self, pipeline: _Pipeline, aggregator: BatchAggregator, draft: AssistantDraft
    ) -> None:
        writer = pipeline.writer
        sink = pipeline.sink
        outcome = await self._pump(pipeline.stream, aggregator, draft, sink, writer)
        if isinstance(outcome, StreamFailure):
            self._report_failure(outcome, aggregator, draft, sink, writer)
            return

        self._flush_pending(aggregator, sink, writer)
        draft.finalize()
        self._dispatch(aggregator.complete(), sink, writer)

        await self.titles.run(
            pipeline.db,
            pipeline.conversation,
            sink,
            writer,
            deadline=pipeline.deadline,
        )
        writer.send("ok")
        logger.info(
            "Chat stream completed",
            data={
                "stream_id": pipeline.stream_id,
                "characters": len(aggregator.full),
                "frames_sent": writer.frames_sent,
                "client_connected": not writer.disconnected,
            },
        )

    async def _pump(
        self,
        stream: TokenStream,
        aggregator: BatchAggregator,
        draft: AssistantDraft,
        sink: BroadcastSink,
        writer: SSEWriter,
    ) -> StreamOutcome:
        """Feed deltas through the aggregator until the stream terminates."""
        while True:
            outcome = await stream.next(wait=writer.seconds_until_ping())
            if outcome is None:
                writer.ping_if_due()
                continue
            if not isinstance(outcome, Delta):
                return outcome
            batch = aggregator.add(outcome.text)
            if batch is not None:
                self._dispatch(batch, sink, writer)
                draft.checkpoint()
            writer.ping_if_due()

    def _dispatch(
        self, batch: FlushBatch, sink: BroadcastSink, writer: SSEWriter | None
    ) -> None:
        sink.emit(batch)
        if writer is not None:
            writer.send_event(BroadcastEvent.from_batch(batch))
        metrics.increment("stream_flushes")

    def _flush_pending(
        self, aggregator: BatchAggregator, sink: BroadcastSink, writer: SSEWriter | None
    ) -> None:
        batch = aggregator.drain()
        if batch is not None:
            self._dispatch(batch, sink, writer)

    def _send_error(
        self, code: ErrorCode, sink: BroadcastSink, writer: SSEWriter | None
    ) -> None:
        message = user_message_for(code)
        sink.emit_error(message)
        if writer is not None:
            writer.send({"error": message, "code": code.value})

    def _interrupt(
        self,
        aggregator: BatchAggregator,
        sink: BroadcastSink,
        writer: SSEWriter | None,
        code: ErrorCode,
    ) -> None:
        """Emit pending text and a terminal error before the draft saves the partial."""
        self._flush_pending(aggregator, sink, writer)
        self._send_error(code, sink, writer)

    def _report_failure(
        self,
        failure: StreamFailure,
        aggregator: BatchAggregator,
        draft: AssistantDraft,
        sink: BroadcastSink,
        writer: SSEWriter,
    ) -> None:
        error = failure.error
        timed_out = isinstance(error, StreamTimeoutError)
        code = ErrorCode.TIMEOUT if timed_out else ErrorCode.STREAM_ERROR
        metrics.increment("stream_timeouts" if timed_out else "stream_errors")
        logger.error(
            "Chat stream failed mid-response",
            exc_info=error,
            data={
                "code": code.value,
                "provider_code": error.code.value,
                "details": error.details,
                "characters": len(aggregator.full),
            },
        )

        self._flush_pending(aggregator, sink, writer)
        draft.fail()
        self._send_error(code, sink, writer)

    def _open_error(self, outcome: StreamOutcome) -> AppError:
        if isinstance(outcome, StreamEnd):
            return StreamAbortError("Provider returned an empty stream")
        if not isinstance(outcome, StreamFailure):
            return AppError(
                ErrorCode.INTERNAL_ERROR,
                user_message_for(ErrorCode.INTERNAL_ERROR),
                status_code=500,
                details={"outcome": type(outcome).__name__},
            )
        error = outcome.error
        if error.code in _OPEN_ERROR_CODES:
            return error
        return AppError(
            ErrorCode.INTERNAL_ERROR,
            user_message_for(ErrorCode.INTERNAL_ERROR),
            status_code=500,
            details={"provider_code": error.code.value, "reason": error.message},
        )

    def _build_request(
        self, conversation: Conversation, history: Sequence[Message], model: str
    ) -> ChatRequest:
        chatlog = [
            ChatMessage(role=message.role, content=message.content)
            for message in history
            if message.content
        ]
        if chatlog and chatlog[-1].role == "user":
            chatlog[-1] = ChatMessage(
                role="user", content=enrich_short_user_message(chatlog[-1].content)
            )
        system = ChatMessage(
            role="system", content=build_chat_system_prompt(conversation.system_prompt)
        )
        return ChatRequest(
            messages=[system, *chatlog],
            model=model,
            temperature=0.7,
            max_tokens=2048,
            top_p=1.0,
            presence_penalty=0.5,
            frequency_penalty=0.5,
            stream=True,
        )
