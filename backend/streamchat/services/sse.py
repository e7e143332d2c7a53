"""Server-sent event framing and the live response writer."""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from streamchat.core import get_logger
from streamchat.core.metrics import metrics
from streamchat.services.broadcast import BroadcastEvent, Subscription

logger = get_logger(__name__)

KEEPALIVE_FRAME = ":\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_data_frame(payload: Any) -> str:
    """Serialize a payload to a ``data:`` frame."""
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return f"data: {data}\n\n"


class ClientDisconnectedError(Exception):
    """The consumer of a frame transport has gone away."""


class FrameTransport(ABC):
    """Destination for SSE frames with an explicit flush contract."""

    @abstractmethod
    def write(self, frame: str) -> None:
        """Buffer a frame. Nothing is delivered until ``flush()``."""

    @abstractmethod
    def flush(self) -> None:
        """Deliver everything written since the last flush."""

    @abstractmethod
    def close(self) -> None:
        """Signal that no further frames will be written."""


class QueueTransport(FrameTransport):
    """Feeds a ``StreamingResponse`` body through an ``asyncio.Queue``."""

    def __init__(self) -> None:
        self._buffer: list[str] = []
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def write(self, frame: str) -> None:
        if self._detached:
            raise ClientDisconnectedError("Client disconnected")
        self._buffer.append(frame)

    def flush(self) -> None:
        if self._detached:
            self._buffer.clear()
            raise ClientDisconnectedError("Client disconnected")
        if not self._buffer:
            return
        chunk = "".join(self._buffer)
        self._buffer.clear()
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def detach(self) -> None:
        """Mark the consumer gone; later writes raise."""
        self._detached = True
        self._buffer.clear()

    async def frames(self) -> AsyncIterator[str]:
        """Yield flushed chunks until the transport is closed."""
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            self.detach()


class SSEWriter:
    """Writes SSE frames to a transport, one flush per frame.

    Delivery is best effort: the first transport failure is logged and marks
    the writer disconnected, after which frames are dropped silently.
    """

    def __init__(
        self,
        transport: FrameTransport,
        ping_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.ping_interval = ping_interval
        self._clock = clock
        self._last_ping = clock()
        self.disconnected = False
        self.frames_sent = 0

    def send(self, payload: Any) -> bool:
        return self._emit(format_data_frame(payload))

    def send_event(self, event: BroadcastEvent) -> bool:
        return self.send(event.to_dict())

    def ping(self) -> bool:
        self._last_ping = self._clock()
        sent = self._emit(KEEPALIVE_FRAME)
        if sent:
            metrics.increment("sse_pings_sent")
        return sent

    def ping_if_due(self) -> bool:
        if self.seconds_until_ping() > 0:
            return False
        return self.ping()

    def seconds_until_ping(self) -> float:
        elapsed = self._clock() - self._last_ping
        return max(self.ping_interval - elapsed, 0.0)

    def close(self) -> None:
        try:
            self.transport.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.debug("Error closing frame transport", data={"error": str(exc)})

    def _emit(self, frame: str) -> bool:
        if self.disconnected:
            return False
        try:
            self.transport.write(frame)
            self.transport.flush()
        except Exception as exc:
            self.disconnected = True
            logger.info(
                "Live response writer disconnected; continuing without client",
                data={"error": str(exc) or exc.__class__.__name__},
            )
            return False
        self.frames_sent += 1
        return True


async def subscription_frames(
    subscription: Subscription, ping_interval: float = 5.0
) -> AsyncIterator[str]:
    """SSE frames for a channel subscriber, with keepalives while idle."""
    with subscription:
        while True:
            event = await subscription.get(timeout=ping_interval)
            if event is None:
                if subscription.closed:
                    return
                metrics.increment("sse_pings_sent")
                yield KEEPALIVE_FRAME
                continue
            yield format_data_frame(event.to_dict())
