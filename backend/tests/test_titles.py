"""Tests for title decisions, cleanup, and the title sub-orchestrator."""

from __future__ import annotations

import pytest

from conftest import StubProvider, chunks
from streamchat.core import ProviderUnavailableError
from streamchat.core.metrics import metrics
from streamchat.db.repositories import create_conversation, create_message, get_recent_messages
from streamchat.services.broadcast import BroadcastHub, BroadcastSink, channel_name
from streamchat.services.prompts import GREETING_FRAMING, SHORT_MESSAGE_FRAMING, TITLE_SYSTEM_PROMPT
from streamchat.services.titles import (
    TITLE_TEMPERATURE,
    TitleDecision,
    TitleGenerator,
    build_title_context,
    clean_title,
    enrich_short_context,
    is_greeting,
    should_generate_title,
)


@pytest.mark.parametrize(
    ("title", "count", "expected"),
    [
        ("New conversation", 12, TitleDecision.GENERATE),
        ("Custom", 1, TitleDecision.GENERATE),
        ("Custom", 2, TitleDecision.GENERATE),
        ("Custom", 3, TitleDecision.SKIP),
        ("Custom", 7, TitleDecision.GENERATE),
        ("Custom", 8, TitleDecision.SKIP),
        ("Custom", 14, TitleDecision.GENERATE),
    ],
)
def test_should_generate_title(title: str, count: int, expected: TitleDecision) -> None:
    assert should_generate_title(title, count, default_title="New conversation") is expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('"Async Python Basics."', "Async Python Basics"),
        ("  What is Rust?!  ", "What is Rust"),
        ("It's done", "Its done"),
        ('"?!"', ""),
    ],
)
def test_clean_title(raw: str, expected: str) -> None:
    assert clean_title(raw) == expected


def test_greeting_matches_whole_words_only() -> None:
    assert is_greeting("Hello!")
    assert is_greeting("hey there")
    assert not is_greeting("this")
    assert not is_greeting("which way")


def test_short_context_is_framed() -> None:
    assert enrich_short_context("hi") == GREETING_FRAMING.format(message="hi")
    assert enrich_short_context("why?") == SHORT_MESSAGE_FRAMING.format(message="why?")
    assert enrich_short_context("Tell me about sockets") == "Tell me about sockets"


def test_title_context_skips_empty_messages(db_session) -> None:
    conversation = create_conversation(db_session)
    create_message(db_session, conversation.id, "user", "first")
    create_message(db_session, conversation.id, "assistant", "")
    create_message(db_session, conversation.id, "user", "second")

    recent = get_recent_messages(db_session, conversation.id, 7)
    assert build_title_context(recent) == "first\nsecond"


async def _collect(subscription) -> list:
    events = []
    while True:
        event = await subscription.get(timeout=0.01)
        if event is None:
            return events
        events.append(event)


@pytest.mark.asyncio
async def test_title_is_generated_streamed_and_stored(db_session, settings, fake_clock) -> None:
    conversation = create_conversation(db_session)
    create_message(db_session, conversation.id, "user", "How do I use asyncio properly?")
    create_message(db_session, conversation.id, "assistant", "Start with asyncio.run.")

    provider = StubProvider([chunks('"Async', " Python", ' Basics."')])
    hub = BroadcastHub()
    subscription = hub.subscribe(channel_name(conversation.id))
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    generator = TitleGenerator(provider, settings, sleep=record_sleep, clock=fake_clock)
    generated_before = metrics.get("titles_generated")

    title = await generator.run(db_session, conversation, BroadcastSink(hub, conversation.id))

    assert title == "Async Python Basics"
    db_session.refresh(conversation)
    assert conversation.title == "Async Python Basics"
    assert conversation.last_activity is not None
    assert metrics.get("titles_generated") == generated_before + 1

    events = await _collect(subscription)
    assert events and all(event.is_title for event in events)
    assert events[-1].is_complete is True
    assert events[-1].content == "Async Python Basics"
    streamed = "".join(event.content for event in events if not event.is_complete)
    assert streamed == '"Async Python Basics."'
    assert sleeps == [pytest.approx(0.025)]

    request = provider.requests[0]
    assert request.model == settings.default_model
    assert request.temperature == TITLE_TEMPERATURE
    assert request.messages[0].content == TITLE_SYSTEM_PROMPT
    assert "How do I use asyncio properly?" in request.messages[1].content


@pytest.mark.asyncio
async def test_title_paced_between_flushes(db_session, settings, fake_clock) -> None:
    conversation = create_conversation(db_session)
    create_message(db_session, conversation.id, "user", "Explain vector databases")

    class AdvancingProvider(StubProvider):
        async def chat_stream(self, request):
            async for chunk in super().chat_stream(request):
                fake_clock.advance(0.06)
                yield chunk

    provider = AdvancingProvider([chunks("Vector", " Database", " Primer")])
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    generator = TitleGenerator(provider, settings, sleep=record_sleep, clock=fake_clock)
    hub = BroadcastHub()
    subscription = hub.subscribe(channel_name(conversation.id))

    await generator.run(db_session, conversation, BroadcastSink(hub, conversation.id))

    events = await _collect(subscription)
    assert [event.content for event in events[:-1]] == ["Vector", " Database", " Primer"]
    assert len(sleeps) == 3


@pytest.mark.asyncio
async def test_empty_title_leaves_conversation_untitled(db_session, settings, fake_clock) -> None:
    conversation = create_conversation(db_session)
    create_message(db_session, conversation.id, "user", "Something long enough")

    provider = StubProvider([chunks('"?!"')])
    generator = TitleGenerator(provider, settings, clock=fake_clock)

    title = await generator.run(
        db_session, conversation, BroadcastSink(BroadcastHub(), conversation.id)
    )

    assert title is None
    db_session.refresh(conversation)
    assert conversation.title == settings.default_conversation_title
    assert conversation.last_activity is not None


@pytest.mark.asyncio
async def test_title_failure_is_swallowed(db_session, settings, fake_clock) -> None:
    conversation = create_conversation(db_session)
    create_message(db_session, conversation.id, "user", "Something long enough")

    provider = StubProvider([[*chunks("Partial"), ProviderUnavailableError()]])
    generator = TitleGenerator(provider, settings, clock=fake_clock)
    failures_before = metrics.get("title_failures")

    title = await generator.run(
        db_session, conversation, BroadcastSink(BroadcastHub(), conversation.id)
    )

    assert title is None
    assert metrics.get("title_failures") == failures_before + 1
    db_session.refresh(conversation)
    assert conversation.title == settings.default_conversation_title
    assert conversation.last_activity is not None
    assert provider.closed_streams == 1


@pytest.mark.asyncio
async def test_title_skipped_for_settled_conversation(db_session, settings, fake_clock) -> None:
    conversation = create_conversation(db_session, title="Custom title")
    for content in ("one", "two", "three"):
        create_message(db_session, conversation.id, "user", content)

    provider = StubProvider([chunks("Unused")])
    generator = TitleGenerator(provider, settings, clock=fake_clock)

    title = await generator.run(
        db_session, conversation, BroadcastSink(BroadcastHub(), conversation.id)
    )

    assert title is None
    assert provider.requests == []
    db_session.refresh(conversation)
    assert conversation.title == "Custom title"
    assert conversation.last_activity is not None
