"""
Gemini adapter: Gemini generateContent API over httpx.

Wire shape:
- POST {base}/models/{model}:streamGenerateContent?alt=sse
  (non-streaming: :generateContent), header x-goog-api-key
- camelCase body: contents / systemInstruction / generationConfig
- roles are "user" and "model"; inlineData parts precede the text part
- every SSE data frame is a full GenerateContentResponse
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
from echo_chat.adapters.llm.stream_events import Delta, Done, StreamError, StreamEvent, Usage
from echo_chat.constants import GEMINI_DEFAULT_BASE_URL
from echo_chat.errors import ErrorKind, ProviderRejected, RejectionReason
from echo_chat.models.account import ProviderKind
from echo_chat.models.message import Role, TokenUsage

_BLOCKING_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"})


def _base_url(endpoint_url: str | None) -> str:
    return (endpoint_url or GEMINI_DEFAULT_BASE_URL).rstrip("/")


def _headers(secret: str | None) -> dict[str, str]:
    return {
        "x-goog-api-key": secret or "",
        "content-type": "application/json",
    }


def build_content(turn: ChatTurn) -> dict[str, Any]:
    parts: list[dict[str, Any]] = [
        {
            "inlineData": {
                "mimeType": image.mime_type,
                "data": base64.b64encode(image.data).decode("ascii"),
            }
        }
        for image in turn.images
    ]
    parts.append({"text": turn.content})
    return {
        "role": "model" if turn.role is Role.ASSISTANT else "user",
        "parts": parts,
    }


def build_payload(request: ChatRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "contents": [build_content(turn) for turn in request.turns()],
    }
    if request.system_prompt:
        payload["systemInstruction"] = {
            "role": "user",
            "parts": [{"text": request.system_prompt}],
        }

    generation: dict[str, Any] = {}
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if request.max_tokens:
        generation["maxOutputTokens"] = request.max_tokens
    if generation:
        payload["generationConfig"] = generation
    return payload


def _blocked(response: dict[str, Any]) -> StreamError | None:
    feedback = response.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        return StreamError(
            kind=ErrorKind.PROVIDER_REJECTED,
            detail=f"prompt blocked: {feedback['blockReason']}",
            reason=RejectionReason.CONTENT_POLICY,
        )
    for candidate in response.get("candidates") or []:
        if candidate.get("finishReason") in _BLOCKING_FINISH_REASONS:
            return StreamError(
                kind=ErrorKind.PROVIDER_REJECTED,
                detail=f"response blocked: {candidate['finishReason']}",
                reason=RejectionReason.CONTENT_POLICY,
            )
    return None


def _texts(response: dict[str, Any]) -> list[str]:
    candidates = response.get("candidates") or []
    if not candidates:
        return []
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return [part["text"] for part in parts if part.get("text")]


def _usage(response: dict[str, Any]) -> TokenUsage | None:
    meta = response.get("usageMetadata")
    if not meta:
        return None
    return TokenUsage(
        input_tokens=meta.get("promptTokenCount"),
        output_tokens=meta.get("candidatesTokenCount"),
    )


class _GeminiTranslator:
    """Each frame is a complete response object; usage accumulates across frames."""

    def __init__(self) -> None:
        self._usage = TokenUsage()

    def translate(self, frame: SSEFrame) -> list[StreamEvent]:
        response = parse_frame_json(frame, provider=ProviderKind.GEMINI.value)
        if response is None:
            return []

        if response.get("error"):
            return [error_from_payload(response["error"])]

        events: list[StreamEvent] = [Delta(text) for text in _texts(response)]

        usage = _usage(response)
        if usage is not None:
            self._usage = self._usage.merge(usage)

        blocked = _blocked(response)
        if blocked is not None:
            events.append(blocked)
        return events

    def finish(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if self._usage != TokenUsage():
            events.append(Usage(self._usage))
        events.append(Done())
        return events


class GeminiAdapter:
    """Streaming adapter for the Gemini generateContent API."""

    kind = ProviderKind.GEMINI

    def __init__(self, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or default_client()

    # ------------------------------------------------------------------
    # Public API (ProviderAdapter contract)
    # ------------------------------------------------------------------

    def send_streaming(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        base = _base_url(request.account.endpoint_url)
        return stream_sse(
            self._client,
            f"{base}/models/{request.account.model}:streamGenerateContent?alt=sse",
            headers=_headers(request.secret),
            payload=build_payload(request),
            translator=_GeminiTranslator(),
        )

    async def send_once(self, request: ChatRequest) -> ChatReply:
        base = _base_url(request.account.endpoint_url)
        data = await request_json(
            self._client,
            "POST",
            f"{base}/models/{request.account.model}:generateContent",
            headers=_headers(request.secret),
            payload=build_payload(request),
        )

        blocked = _blocked(data)
        if blocked is not None:
            raise ProviderRejected(blocked.detail, reason=RejectionReason.CONTENT_POLICY)

        content = "".join(_texts(data))
        if not content:
            raise ProviderRejected("No content in response", reason=RejectionReason.OTHER)

        return ChatReply(
            content=content,
            model=data.get("modelVersion") or request.account.model,
            usage=_usage(data),
        )

    async def list_models(
        self,
        *,
        secret: str | None,
        endpoint_url: str | None = None,
    ) -> list[ModelInfo]:
        data = await request_json(
            self._client,
            "GET",
            f"{_base_url(endpoint_url)}/models",
            headers=_headers(secret),
        )
        models: list[ModelInfo] = []
        for m in data.get("models") or []:
            if "generateContent" not in (m.get("supportedGenerationMethods") or []):
                continue
            name = m.get("name", "")
            model_id = name[len("models/"):] if name.startswith("models/") else name
            models.append(ModelInfo(model_id, m.get("displayName") or model_id))
        return models

    async def check_endpoint(self, *, endpoint_url: str | None, secret: str | None) -> None:
        # Capabilities are fixed per provider kind
        return None

    async def aclose(self) -> None:
        await self._client.aclose()
