"""
Local adapter: any OpenAI-compatible chat-completions server
(llama.cpp, Ollama, LM Studio, vLLM) through the openai SDK.

Wire shape:
- POST {base}/v1/chat/completions with stream=true
- bearer header only when a key is configured
- system prompt travels as the first "system" message
- images are not supported; the capability table rejects them upstream
- the endpoint is checked with GET {base}/v1/models before first use
"""

from __future__ import annotations

import time
from typing import Any, AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI, Omit

from echo_chat.adapters.llm.base import ChatReply, ChatRequest, ModelInfo
from echo_chat.adapters.llm.error_mapping import classify_rejection
from echo_chat.adapters.llm.http_stream import default_client
from echo_chat.adapters.llm.stream_events import Delta, Done, StreamError, StreamEvent, Usage
from echo_chat.constants import LOCAL_DEFAULT_BASE_URL
from echo_chat.errors import (
    ChatError,
    ErrorKind,
    NetworkError,
    ProviderRejected,
    ProviderTimeout,
    RejectionReason,
)
from echo_chat.models.account import ProviderKind
from echo_chat.models.message import Role, TokenUsage
from echo_chat.observability.logger import log_event


# The SDK refuses an empty key; keyless servers get this and no Authorization header
_KEYLESS_API_KEY = "not-needed"


def api_base(endpoint_url: str | None) -> str:
    return f"{(endpoint_url or LOCAL_DEFAULT_BASE_URL).rstrip('/')}/v1"


def build_messages(request: ChatRequest) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    for turn in request.turns():
        messages.append({"role": Role(turn.role).value, "content": turn.content})
    return messages


def _completion_kwargs(request: ChatRequest, *, stream: bool) -> dict[str, Any]:
    kwargs: dict[str, Any] = dict(
        model=request.account.model,
        messages=build_messages(request),
        stream=stream,
    )
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.max_tokens:
        kwargs["max_tokens"] = request.max_tokens
    return kwargs


def _to_chat_error(exc: openai.OpenAIError) -> ChatError:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout(str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        message = exc.message or ""
        return ProviderRejected(
            f"HTTP {exc.status_code}: {message}",
            reason=classify_rejection(exc.status_code, message, exc.code or exc.type),
        )
    return ProviderRejected(str(exc), reason=RejectionReason.OTHER)


class LocalCompatibleAdapter:
    """
    Streaming adapter for OpenAI-compatible servers.

    Design notes:
    - One adapter instance serves every local account; the SDK client is
      built per call around a shared pooled HTTP client.
    - Endpoint checks are cached per endpoint, only successes are cached.
    """

    kind = ProviderKind.LOCAL

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client or default_client()
        self._checked: set[str] = set()

    # ------------------------------------------------------------------
    # Public API (ProviderAdapter contract)
    # ------------------------------------------------------------------

    async def send_streaming(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        endpoint = request.account.endpoint_url
        try:
            await self.check_endpoint(endpoint_url=endpoint, secret=request.secret)
        except ChatError as e:
            yield StreamError(kind=e.kind, detail=e.detail, reason=e.reason)
            return

        usage: TokenUsage | None = None
        try:
            client = self._client(endpoint, request.secret)
            stream = await client.chat.completions.create(**_completion_kwargs(request, stream=True))
            try:
                async for chunk in stream:
                    delta = self._extract_delta(chunk)
                    if delta:
                        yield Delta(delta)
                    if getattr(chunk, "usage", None) is not None:
                        usage = TokenUsage(
                            input_tokens=chunk.usage.prompt_tokens,
                            output_tokens=chunk.usage.completion_tokens,
                        )
            finally:
                await stream.close()
        except openai.OpenAIError as exc:
            err = _to_chat_error(exc)
            yield StreamError(kind=err.kind, detail=err.detail, reason=err.reason)
            return

        if usage is not None:
            yield Usage(usage)
        yield Done()

    async def send_once(self, request: ChatRequest) -> ChatReply:
        endpoint = request.account.endpoint_url
        await self.check_endpoint(endpoint_url=endpoint, secret=request.secret)

        try:
            client = self._client(endpoint, request.secret)
            response = await client.chat.completions.create(**_completion_kwargs(request, stream=False))
        except openai.OpenAIError as exc:
            raise _to_chat_error(exc) from exc

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        if not content:
            raise ProviderRejected("No content in response", reason=RejectionReason.OTHER)

        usage = None
        if response.usage is not None:
            usage = TokenUsage(response.usage.prompt_tokens, response.usage.completion_tokens)
        return ChatReply(content=content, model=response.model or request.account.model, usage=usage)

    async def list_models(
        self,
        *,
        secret: str | None,
        endpoint_url: str | None = None,
    ) -> list[ModelInfo]:
        try:
            client = self._client(endpoint_url, secret)
            page = await client.models.list()
        except openai.OpenAIError as exc:
            raise _to_chat_error(exc) from exc
        return [ModelInfo(m.id, m.id) for m in page.data]

    async def check_endpoint(self, *, endpoint_url: str | None, secret: str | None) -> None:
        base = api_base(endpoint_url)
        if base in self._checked:
            return

        try:
            await self.list_models(secret=secret, endpoint_url=endpoint_url)
        except ChatError as e:
            log_event({
                "ts_ms": int(time.time() * 1000),
                "event_type": "LOCAL_ENDPOINT_CHECK_FAILED",
                "endpoint": base,
                "error_kind": e.kind.value,
                "detail": e.detail,
            })
            if e.kind is ErrorKind.PROVIDER_REJECTED:
                raise
            raise NetworkError(f"endpoint {base} did not respond to the capability check: {e.detail}") from e

        self._checked.add(base)

    async def aclose(self) -> None:
        await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _client(self, endpoint_url: str | None, secret: str | None) -> AsyncOpenAI:
        if secret:
            return AsyncOpenAI(
                base_url=api_base(endpoint_url),
                api_key=secret,
                max_retries=0,
                http_client=self._http_client,
            )
        return AsyncOpenAI(
            base_url=api_base(endpoint_url),
            api_key=_KEYLESS_API_KEY,
            max_retries=0,
            http_client=self._http_client,
            default_headers={"Authorization": Omit()},
        )

    @staticmethod
    def _extract_delta(chunk: Any) -> str:
        """
        Extract text delta from a streaming chunk.

        Servers may send a final usage-only chunk with no choices.
        """
        if not chunk.choices:
            return ""
        return chunk.choices[0].delta.content or ""
