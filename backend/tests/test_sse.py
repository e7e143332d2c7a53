"""Tests for SSE framing, the frame transport, and keepalive pacing."""

from __future__ import annotations

import pytest

from streamchat.core.metrics import metrics
from streamchat.services.broadcast import BroadcastEvent, BroadcastHub
from streamchat.services.sse import (
    KEEPALIVE_FRAME,
    ClientDisconnectedError,
    FrameTransport,
    QueueTransport,
    SSEWriter,
    format_data_frame,
    subscription_frames,
)


class RecordingTransport(FrameTransport):
    def __init__(self, fail_on_flush: bool = False) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on_flush = fail_on_flush

    def write(self, frame: str) -> None:
        self.calls.append(("write", frame))

    def flush(self) -> None:
        self.calls.append(("flush", None))
        if self.fail_on_flush:
            raise BrokenPipeError("client went away")

    def close(self) -> None:
        self.calls.append(("close", None))

    @property
    def frames(self) -> list[str]:
        return [frame for kind, frame in self.calls if kind == "write"]


def test_frame_grammar() -> None:
    assert format_data_frame("ok") == 'data: "ok"\n\n'
    assert format_data_frame({"error": "x", "code": "STREAM_ERROR"}) == (
        'data: {"error":"x","code":"STREAM_ERROR"}\n\n'
    )
    assert KEEPALIVE_FRAME == ":\n\n"


def test_every_frame_is_followed_by_flush(fake_clock) -> None:
    transport = RecordingTransport()
    writer = SSEWriter(transport, ping_interval=5.0, clock=fake_clock)

    writer.send_event(BroadcastEvent.payload("abc"))
    writer.ping()
    writer.send("ok")

    kinds = [kind for kind, _ in transport.calls]
    assert kinds == ["write", "flush", "write", "flush", "write", "flush"]


def test_keepalive_fires_after_interval_regardless_of_payloads(fake_clock) -> None:
    transport = RecordingTransport()
    writer = SSEWriter(transport, ping_interval=5.0, clock=fake_clock)
    pings_before = metrics.get("sse_pings_sent")

    assert writer.seconds_until_ping() == pytest.approx(5.0)
    fake_clock.advance(4.0)
    writer.send_event(BroadcastEvent.payload("busy"))
    assert writer.ping_if_due() is False
    assert writer.seconds_until_ping() == pytest.approx(1.0)

    fake_clock.advance(1.0)
    assert writer.ping_if_due() is True
    assert writer.ping_if_due() is False
    assert transport.frames[-1] == KEEPALIVE_FRAME
    assert metrics.get("sse_pings_sent") == pings_before + 1


def test_keepalives_are_spaced_by_interval(fake_clock) -> None:
    transport = RecordingTransport()
    writer = SSEWriter(transport, ping_interval=5.0, clock=fake_clock)
    ping_times: list[float] = []

    for _ in range(200):
        fake_clock.advance(0.25)
        if writer.ping_if_due():
            ping_times.append(fake_clock())

    gaps = [later - earlier for earlier, later in zip(ping_times, ping_times[1:])]
    assert len(ping_times) == 10
    assert all(gap >= 5.0 for gap in gaps)


def test_writer_failure_is_logged_once_then_dropped(fake_clock) -> None:
    transport = RecordingTransport(fail_on_flush=True)
    writer = SSEWriter(transport, ping_interval=5.0, clock=fake_clock)

    assert writer.send("first") is False
    assert writer.disconnected is True
    calls_after_failure = len(transport.calls)

    assert writer.send("second") is False
    assert writer.ping() is False
    assert len(transport.calls) == calls_after_failure


@pytest.mark.asyncio
async def test_queue_transport_delivers_only_flushed_frames() -> None:
    transport = QueueTransport()
    transport.write("data: 1\n\n")
    transport.write("data: 2\n\n")
    transport.flush()
    transport.write("data: unflushed\n\n")
    transport.close()

    received = [chunk async for chunk in transport.frames()]

    assert received == ["data: 1\n\ndata: 2\n\n"]
    assert transport.detached is True


@pytest.mark.asyncio
async def test_queue_transport_raises_once_consumer_is_gone() -> None:
    transport = QueueTransport()
    frames = transport.frames()
    transport.write("data: 1\n\n")
    transport.flush()
    assert await frames.__anext__() == "data: 1\n\n"

    await frames.aclose()

    with pytest.raises(ClientDisconnectedError):
        transport.write("data: 2\n\n")


@pytest.mark.asyncio
async def test_writer_keeps_going_after_transport_detaches(fake_clock) -> None:
    transport = QueueTransport()
    writer = SSEWriter(transport, ping_interval=5.0, clock=fake_clock)
    transport.detach()

    assert writer.send("anything") is False
    assert writer.disconnected is True
    writer.close()


@pytest.mark.asyncio
async def test_subscription_frames_yield_events_and_keepalives() -> None:
    hub = BroadcastHub()
    subscription = hub.subscribe("chat.1")
    frames = subscription_frames(subscription, ping_interval=0.01)

    assert await frames.__anext__() == KEEPALIVE_FRAME

    hub.publish("chat.1", BroadcastEvent.payload("hi"))
    assert await frames.__anext__() == format_data_frame(
        BroadcastEvent.payload("hi").to_dict()
    )

    hub.shutdown()
    remaining = [frame async for frame in frames]
    assert remaining == []
    assert hub.subscriber_count("chat.1") == 0
