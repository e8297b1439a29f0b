"""
Claude adapter: Anthropic Messages API over httpx.

Wire shape:
- POST {base}/messages, headers x-api-key + anthropic-version
- text-only turns send `content` as a plain string
- turns with images send image blocks first, then one text block
- SSE events: message_start, content_block_delta(text_delta),
  message_delta, message_stop, error, ping
"""

from __future__ import annotations

import base64
from typing import Any, AsyncIterator

import httpx

from echo_chat.adapters.llm.base import ChatReply, ChatRequest, ChatTurn, ModelInfo
from echo_chat.adapters.llm.error_mapping import error_from_payload
from echo_chat.adapters.llm.http_stream import (
    default_client,
    parse_frame_json,
    request_json,
    stream_sse,
)
from echo_chat.adapters.llm.sse import SSEFrame
from echo_chat.adapters.llm.stream_events import Delta, Done, StreamEvent, Usage
from echo_chat.constants import (
    CLAUDE_API_VERSION,
    CLAUDE_DEFAULT_BASE_URL,
    CLAUDE_DEFAULT_MAX_TOKENS,
)
from echo_chat.errors import ProviderRejected, RejectionReason
from echo_chat.models.account import ProviderKind
from echo_chat.models.message import Role, TokenUsage

# Offered when the models endpoint fails for a non-auth reason
FALLBACK_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("claude-opus-4-0-20250514", "Claude Opus 4"),
    ModelInfo("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5"),
    ModelInfo("claude-sonnet-4-0-20250514", "Claude Sonnet 4"),
    ModelInfo("claude-haiku-3-5-20241022", "Claude Haiku 3.5"),
)


def _base_url(endpoint_url: str | None) -> str:
    return (endpoint_url or CLAUDE_DEFAULT_BASE_URL).rstrip("/")


def _headers(secret: str | None) -> dict[str, str]:
    return {
        "x-api-key": secret or "",
        "anthropic-version": CLAUDE_API_VERSION,
        "content-type": "application/json",
    }


def build_message(turn: ChatTurn) -> dict[str, Any]:
    role = "assistant" if turn.role is Role.ASSISTANT else "user"
    if not turn.images:
        return {"role": role, "content": turn.content}

    blocks: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.mime_type,
                "data": base64.b64encode(image.data).decode("ascii"),
            },
        }
        for image in turn.images
    ]
    blocks.append({"type": "text", "text": turn.content})
    return {"role": role, "content": blocks}


def build_payload(request: ChatRequest, *, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.account.model,
        "max_tokens": request.max_tokens or CLAUDE_DEFAULT_MAX_TOKENS,
        "messages": [build_message(turn) for turn in request.turns()],
    }
    if request.system_prompt:
        payload["system"] = request.system_prompt
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if stream:
        payload["stream"] = True
    return payload


class _ClaudeTranslator:
    """Stateful per-stream translation of Messages API SSE events."""

    def __init__(self) -> None:
        self._usage = TokenUsage()

    def translate(self, frame: SSEFrame) -> list[StreamEvent]:
        event = parse_frame_json(frame, provider=ProviderKind.CLAUDE.value)
        if event is None:
            return []

        etype = event.get("type") or frame.event

        if etype == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [Delta(delta["text"])]
            return []

        if etype == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._usage = self._usage.merge(TokenUsage(input_tokens=usage.get("input_tokens")))
            return []

        if etype == "message_delta":
            usage = event.get("usage") or {}
            self._usage = self._usage.merge(TokenUsage(output_tokens=usage.get("output_tokens")))
            return []

        if etype == "message_stop":
            return self.finish()

        if etype == "error":
            return [error_from_payload(event.get("error") or {})]

        # ping, content_block_start, content_block_stop
        return []

    def finish(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if self._usage != TokenUsage():
            events.append(Usage(self._usage))
        events.append(Done())
        return events


class ClaudeAdapter:
    """
    Streaming adapter for the Anthropic Messages API.

    Stateless apart from the pooled HTTP client; one instance serves every
    Claude account.
    """

    kind = ProviderKind.CLAUDE

    def __init__(self, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or default_client()

    # ------------------------------------------------------------------
    # Public API (ProviderAdapter contract)
    # ------------------------------------------------------------------

    def send_streaming(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        return stream_sse(
            self._client,
            f"{_base_url(request.account.endpoint_url)}/messages",
            headers=_headers(request.secret),
            payload=build_payload(request, stream=True),
            translator=_ClaudeTranslator(),
        )

    async def send_once(self, request: ChatRequest) -> ChatReply:
        data = await request_json(
            self._client,
            "POST",
            f"{_base_url(request.account.endpoint_url)}/messages",
            headers=_headers(request.secret),
            payload=build_payload(request, stream=False),
        )
        content = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        if not content:
            raise ProviderRejected("No content in response", reason=RejectionReason.OTHER)

        usage = data.get("usage") or {}
        return ChatReply(
            content=content,
            model=data.get("model") or request.account.model,
            usage=TokenUsage(usage.get("input_tokens"), usage.get("output_tokens")),
        )

    async def list_models(
        self,
        *,
        secret: str | None,
        endpoint_url: str | None = None,
    ) -> list[ModelInfo]:
        try:
            data = await request_json(
                self._client,
                "GET",
                f"{_base_url(endpoint_url)}/models",
                headers=_headers(secret),
            )
        except ProviderRejected as e:
            if e.reason is RejectionReason.AUTH:
                raise
            # Key is likely valid but the models endpoint failed
            return list(FALLBACK_MODELS)

        models = [
            ModelInfo(m["id"], m.get("display_name") or m["id"])
            for m in data.get("data") or []
            if m.get("id")
        ]
        return models or list(FALLBACK_MODELS)

    async def check_endpoint(self, *, endpoint_url: str | None, secret: str | None) -> None:
        # Capabilities are fixed per provider kind
        return None

    async def aclose(self) -> None:
        await self._client.aclose()
