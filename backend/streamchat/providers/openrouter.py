"""OpenRouter (OpenAI-compatible) provider adapter."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from streamchat.config import Settings
from streamchat.core import (
    ProviderBadResponseError,
    StreamAbortError,
    StreamTimeoutError,
    get_logger,
)
from streamchat.providers.base import BaseProvider, ChatChunk, ChatRequest, ModelInfo
from streamchat.providers.http_client import (
    create_http_client,
    parse_json,
    raise_for_status,
    send_with_retries,
)

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class OpenRouterProvider(BaseProvider):
    """Adapter for OpenRouter's OpenAI-compatible chat completions API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: int,
        max_retries: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.display_name = "OpenRouter"
        self.max_retries = max_retries
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = create_http_client(
            base_url=base_url,
            timeout_seconds=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> OpenRouterProvider:
        return cls(
            base_url=settings.openrouter_base_url,
            api_key=settings.openrouter_api_key or None,
            timeout=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def list_models(self) -> list[ModelInfo]:
        """List models from /models."""
        response = await send_with_retries(
            self.client, "GET", "/models", max_retries=self.max_retries
        )
        raise_for_status(response)
        payload = parse_json(response)

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise ProviderBadResponseError(
                "Provider returned invalid response", details={"body": str(payload)[:300]}
            )

        models: list[ModelInfo] = []
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            top_provider = item.get("top_provider") or {}
            models.append(
                ModelInfo(
                    id=item["id"],
                    name=item.get("name") or "",
                    context_length=item.get("context_length") or 0,
                    max_completion_tokens=top_provider.get("max_completion_tokens") or 0,
                    pricing=item.get("pricing") or {},
                )
            )
        return models

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[ChatChunk]:
        """Stream chat completion deltas parsed from ``data:`` lines."""
        response = await send_with_retries(
            self.client,
            "POST",
            "/chat/completions",
            json=request.to_payload(),
            max_retries=self.max_retries,
            stream=True,
        )

        try:
            if response.status_code >= 400:
                await response.aread()
                raise_for_status(response)

            async for line in _iter_lines(response):
                line = line.strip()
                # Blank keep-alives and ": OPENROUTER PROCESSING" comments
                if not line or line.startswith(":"):
                    continue
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == DONE_SENTINEL:
                    break

                chunk = _parse_chunk(data)
                error = chunk.get("error")
                if error:
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    logger.warning(
                        "Provider reported an error mid-stream",
                        data={"model": request.model, "reason": message},
                    )
                    raise StreamAbortError(
                        "Provider aborted the stream",
                        details={"reason": message or "unknown"},
                    )

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                choice = choices[0] or {}
                delta = choice.get("delta") or {}
                content = delta.get("content")
                finish_reason = choice.get("finish_reason")
                if content is None and not finish_reason:
                    continue
                yield ChatChunk(
                    content=content,
                    finish_reason=finish_reason,
                    model=chunk.get("model", request.model),
                )
        finally:
            await response.aclose()


async def _iter_lines(response: httpx.Response) -> AsyncIterator[str]:
    """Iterate response lines, mapping transport failures to stream errors."""
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.TimeoutException as exc:
        raise StreamTimeoutError(
            "Provider stream timed out", details={"reason": str(exc)}
        ) from exc
    except httpx.HTTPError as exc:
        raise StreamAbortError(
            "Provider stream interrupted", details={"reason": str(exc)}
        ) from exc


def _parse_chunk(data: str) -> dict[str, Any]:
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProviderBadResponseError(
            "Provider returned invalid response", details={"body": data[:300]}
        ) from exc
    if not isinstance(chunk, dict):
        raise ProviderBadResponseError(
            "Provider returned invalid response", details={"body": data[:300]}
        )
    return chunk
