"""In-process pub/sub for conversation channels.

Each subscriber owns a bounded queue. Publishing is synchronous and never
waits on subscribers: events are delivered at most once, FIFO per queue,
and a subscriber whose queue is full is dropped from the channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from streamchat.core import get_logger
from streamchat.core.metrics import metrics
from streamchat.services.batching import FlushBatch

logger = get_logger(__name__)


class EventKind(str, Enum):
    """Tag of a broadcast event."""

    PAYLOAD = "payload"
    ERROR = "error"
    TITLE = "title"


@dataclass(frozen=True)
class BroadcastEvent:
    """Wire payload published to a conversation channel."""

    kind: EventKind
    content: str
    is_complete: bool = False

    @classmethod
    def payload(cls, content: str, is_complete: bool = False) -> BroadcastEvent:
        return cls(kind=EventKind.PAYLOAD, content=content, is_complete=is_complete)

    @classmethod
    def error(cls, message: str) -> BroadcastEvent:
        return cls(kind=EventKind.ERROR, content=message, is_complete=True)

    @classmethod
    def title(cls, content: str, is_complete: bool = False) -> BroadcastEvent:
        return cls(kind=EventKind.TITLE, content=content, is_complete=is_complete)

    @classmethod
    def from_batch(cls, batch: FlushBatch) -> BroadcastEvent:
        if batch.is_error:
            return cls.error(batch.text)
        if batch.is_title:
            return cls.title(batch.text, is_complete=batch.is_complete)
        return cls.payload(batch.text, is_complete=batch.is_complete)

    @property
    def is_error(self) -> bool:
        return self.kind is EventKind.ERROR

    @property
    def is_title(self) -> bool:
        return self.kind is EventKind.TITLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "content": self.content,
            "isComplete": self.is_complete,
            "error": self.is_error,
            "isTitle": self.is_title,
        }


def channel_name(conversation_id: str) -> str:
    """Channel key for a conversation."""
    return f"chat.{conversation_id}"


class Subscription:
    """A subscriber's view of one channel."""

    def __init__(self, hub: BroadcastHub, channel: str, queue_size: int):
        self.hub = hub
        self.channel = channel
        self.queue: asyncio.Queue[BroadcastEvent | None] = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub._remove(self)

    def deliver(self, event: BroadcastEvent | None) -> bool:
        """Enqueue without waiting; False if the queue is full."""
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def end(self) -> None:
        """Mark the subscription finished and wake the reader."""
        self.closed = True
        if not self.deliver(None):
            # Full queue: make room so the sentinel always lands.
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.deliver(None)

    async def get(self, timeout: float | None = None) -> BroadcastEvent | None:
        """Next event, or None on timeout or once the channel ends."""
        if self.closed and self.queue.empty():
            return None
        try:
            event = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            self.closed = True
        return event

    async def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        while True:
            event = await self.queue.get()
            if event is None:
                self.closed = True
                return
            yield event


class BroadcastHub:
    """Registry of channel subscribers."""

    def __init__(self, queue_size: int = 500):
        self.queue_size = queue_size
        self._channels: dict[str, list[Subscription]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, []))

    def subscribe(self, channel: str) -> Subscription:
        """Register a subscriber; events published after this call are delivered."""
        subscription = Subscription(self, channel, self.queue_size)
        self._channels.setdefault(channel, []).append(subscription)
        logger.debug(
            "Subscriber added",
            data={"channel": channel, "subscribers": self.subscriber_count(channel)},
        )
        return subscription

    def publish(self, channel: str, event: BroadcastEvent) -> int:
        """Deliver to every current subscriber; return how many received it."""
        delivered = 0
        for subscription in list(self._channels.get(channel, [])):
            if subscription.deliver(event):
                delivered += 1
                continue
            metrics.increment("broadcast_dropped")
            logger.warning(
                "Dropping slow subscriber",
                data={"channel": channel, "queue_size": self.queue_size},
            )
            self._remove(subscription)
            subscription.end()
        metrics.increment("broadcast_events")
        return delivered

    def close_channel(self, channel: str) -> None:
        for subscription in self._channels.pop(channel, []):
            subscription.end()

    def shutdown(self) -> None:
        for channel in list(self._channels):
            self.close_channel(channel)

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._channels.get(subscription.channel)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._channels.pop(subscription.channel, None)


class BroadcastSink:
    """Publishes flush batches for one conversation. Never raises."""

    def __init__(self, hub: BroadcastHub, conversation_id: str):
        self.hub = hub
        self.conversation_id = conversation_id
        self.channel = channel_name(conversation_id)

    def emit(self, batch: FlushBatch) -> None:
        self._publish(BroadcastEvent.from_batch(batch))

    def emit_error(self, message: str) -> None:
        self._publish(BroadcastEvent.error(message))

    def _publish(self, event: BroadcastEvent) -> None:
        try:
            self.hub.publish(self.channel, event)
        except Exception as exc:
            logger.error(
                "Broadcast publish failed",
                exc_info=exc,
                data={"channel": self.channel, "conversation_id": self.conversation_id},
            )
