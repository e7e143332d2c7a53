"""Tests for the OpenRouter adapter and HTTP error mapping."""

from __future__ import annotations

import json

import httpx
import pytest

from streamchat.config import Settings
from streamchat.core import (
    ErrorCode,
    ProviderAuthError,
    ProviderBadResponseError,
    ProviderUnavailableError,
    RateLimitError,
    StreamAbortError,
)
from streamchat.core.logging import request_id_ctx
from streamchat.providers import ChatMessage, ChatRequest, OpenRouterProvider


def _provider(handler, *, api_key: str | None = "test-key", max_retries: int = 0):
    return OpenRouterProvider(
        base_url="http://openrouter.test/api/v1",
        api_key=api_key,
        timeout=5,
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


def _request(model: str = "alpha/a-1:free") -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role="user", content="Hi")], model=model)


def _sse(*lines: str) -> bytes:
    return "".join(f"{line}\n" for line in lines).encode()


async def _collect(provider: OpenRouterProvider, request: ChatRequest) -> list:
    return [chunk async for chunk in provider.chat_stream(request)]


@pytest.mark.asyncio
async def test_list_models_parses_response() -> None:
    """/models entries without an id are skipped."""
    payload = {
        "data": [
            {
                "id": "alpha/a-1:free",
                "name": "Alpha",
                "context_length": 8192,
                "top_provider": {"max_completion_tokens": 1024},
                "pricing": {"prompt": "0"},
            },
            {"name": "no id"},
            {"id": "paid/gpt-x"},
        ]
    }
    provider = _provider(lambda request: httpx.Response(200, json=payload))

    models = await provider.list_models()

    assert [model.id for model in models] == ["alpha/a-1:free", "paid/gpt-x"]
    assert models[0].context_length == 8192
    assert models[0].max_completion_tokens == 1024
    assert models[0].is_free and not models[1].is_free
    await provider.aclose()


@pytest.mark.asyncio
async def test_list_models_rejects_unexpected_shape() -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"models": []}))

    with pytest.raises(ProviderBadResponseError):
        await provider.list_models()
    await provider.aclose()


@pytest.mark.asyncio
async def test_chat_stream_parses_data_lines() -> None:
    """Comments and blank lines are skipped; [DONE] ends the stream."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            ": OPENROUTER PROCESSING",
            "",
            'data: {"choices":[{"delta":{"role":"assistant"}}]}',
            'data: {"choices":[{"delta":{"content":"Hel"}}]}',
            'data: {"choices":[{"delta":{"content":"lo"}}]}',
            'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}',
            "data: [DONE]",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}',
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = _provider(handler)
    token = request_id_ctx.set("req-42")
    try:
        chunks = await _collect(provider, _request())
    finally:
        request_id_ctx.reset(token)

    assert [chunk.content for chunk in chunks] == ["Hel", "lo", None]
    assert chunks[-1].finish_reason == "stop"

    sent = seen[0]
    assert sent.url.path == "/api/v1/chat/completions"
    assert sent.headers["Authorization"] == "Bearer test-key"
    assert sent.headers["X-Request-ID"] == "req-42"
    body = json.loads(sent.content)
    assert body["model"] == "alpha/a-1:free"
    assert body["stream"] is True
    assert body["max_tokens"] == 2048
    assert body["presence_penalty"] == 0.5
    assert body["frequency_penalty"] == 0.5
    assert body["messages"] == [{"role": "user", "content": "Hi"}]
    await provider.aclose()


@pytest.mark.asyncio
async def test_missing_api_key_sends_no_authorization() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    provider = _provider(handler, api_key=None)
    await provider.list_models()

    assert "Authorization" not in seen[0].headers
    await provider.aclose()


@pytest.mark.asyncio
async def test_error_chunk_aborts_stream() -> None:
    body = _sse(
        'data: {"choices":[{"delta":{"content":"par"}}]}',
        'data: {"error":{"message":"upstream overloaded"}}',
    )
    provider = _provider(lambda request: httpx.Response(200, content=body))

    received = []
    with pytest.raises(StreamAbortError) as exc:
        async for chunk in provider.chat_stream(_request()):
            received.append(chunk.content)

    assert received == ["par"]
    assert exc.value.code == ErrorCode.STREAM_ERROR
    assert exc.value.details == {"reason": "upstream overloaded"}
    await provider.aclose()


@pytest.mark.asyncio
async def test_malformed_chunk_is_bad_response() -> None:
    provider = _provider(lambda request: httpx.Response(200, content=_sse("data: {not json")))

    with pytest.raises(ProviderBadResponseError):
        await _collect(provider, _request())
    await provider.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        (503, ProviderUnavailableError),
        (401, ProviderAuthError),
        (429, RateLimitError),
    ],
)
async def test_stream_status_errors_are_mapped(status: int, error_type: type) -> None:
    provider = _provider(lambda request: httpx.Response(status, json={"error": "nope"}))

    with pytest.raises(error_type) as exc:
        await _collect(provider, _request())

    assert exc.value.status_code == status
    await provider.aclose()


@pytest.mark.asyncio
async def test_connect_errors_are_retried_then_unavailable() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler, max_retries=1)

    with pytest.raises(ProviderUnavailableError) as exc:
        await provider.list_models()

    assert calls == 2
    assert exc.value.code == ErrorCode.PROVIDER_UNAVAILABLE
    await provider.aclose()


@pytest.mark.asyncio
async def test_connect_error_recovers_on_retry() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"data": [{"id": "alpha/a-1:free"}]})

    provider = _provider(handler, max_retries=1)

    models = await provider.list_models()

    assert [model.id for model in models] == ["alpha/a-1:free"]
    await provider.aclose()


@pytest.mark.asyncio
async def test_from_settings_uses_configured_base_url() -> None:
    settings = Settings(
        _env_file=None,
        openrouter_base_url="http://router.test/api/v1/",
        openrouter_api_key="secret",
    )

    provider = OpenRouterProvider.from_settings(settings)

    assert str(provider.client.base_url) == "http://router.test/api/v1/"
    assert provider.client.headers["Authorization"] == "Bearer secret"
    await provider.aclose()
