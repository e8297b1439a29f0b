# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest

from echo_chat.adapters.llm.base import ChatRequest, ChatTurn
from echo_chat.adapters.llm.claude import ClaudeAdapter
from echo_chat.adapters.llm.gemini import GeminiAdapter
from echo_chat.adapters.llm.local_compatible import LocalCompatibleAdapter
from echo_chat.adapters.llm.stream_events import Delta, Done, StreamError, Usage
from echo_chat.errors import ErrorKind, ProviderRejected, RejectionReason
from echo_chat.models.account import Account
from echo_chat.models.message import ImageAttachment, Role, TokenUsage

Handler = Callable[[httpx.Request], httpx.Response]


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def account(provider: str, model: str, endpoint_url: str | None = None) -> Account:
    return Account(
        id="acct_1",
        provider=provider,
        display_name="Test",
        model=model,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        endpoint_url=endpoint_url,
    )


def request_for(acct: Account, content: str = "Hi", **kwargs) -> ChatRequest:
    return ChatRequest(account=acct, content=content, secret=kwargs.pop("secret", "sk-test"), **kwargs)


def sse(*frames: dict | str, events: list[str] | None = None) -> bytes:
    out = []
    for i, frame in enumerate(frames):
        data = frame if isinstance(frame, str) else json.dumps(frame)
        if events is not None:
            out.append(f"event: {events[i]}\n")
        out.append(f"data: {data}\n\n")
    return "".join(out).encode("utf-8")


def client(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def event_stream(body: bytes, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})


async def collect(stream) -> list:
    return [event async for event in stream]


# ---------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------

CLAUDE_STREAM = [
    {"type": "message_start", "message": {"usage": {"input_tokens": 10, "output_tokens": 1}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
    {"type": "ping"},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo!"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 5}},
    {"type": "message_stop"},
]


@pytest.mark.asyncio
async def test_claude_stream_translates_to_canonical_events():
    seen: list[httpx.Request] = []

    def handler(req: httpx.Request) -> httpx.Response:
        seen.append(req)
        return event_stream(sse(*CLAUDE_STREAM))

    adapter = ClaudeAdapter(client=client(handler))
    events = await collect(adapter.send_streaming(request_for(account("claude", "claude-test"))))

    assert events == [Delta("Hel"), Delta("lo!"), Usage(TokenUsage(10, 5)), Done()]
    assert seen[0].url.path == "/v1/messages"
    assert seen[0].headers["x-api-key"] == "sk-test"
    assert seen[0].headers["anthropic-version"] == "2023-06-01"
    body = json.loads(seen[0].content)
    assert body["stream"] is True
    assert body["messages"] == [{"role": "user", "content": "Hi"}]
    await adapter.aclose()


@pytest.mark.asyncio
async def test_claude_payload_carries_history_system_prompt_and_images():
    captured: dict = {}

    def handler(req: httpx.Request) -> httpx.Response:
        captured.update(json.loads(req.content))
        return event_stream(sse({"type": "message_stop"}))

    adapter = ClaudeAdapter(client=client(handler))
    req = request_for(
        account("claude", "claude-test"),
        content="What is this?",
        history=(ChatTurn(Role.USER, "Hello"), ChatTurn(Role.ASSISTANT, "Hi there")),
        images=(ImageAttachment(mime_type="image/png", data=b"\x89PNG"),),
        system_prompt="Be brief.",
        temperature=0.2,
    )
    await collect(adapter.send_streaming(req))

    assert captured["system"] == "Be brief."
    assert captured["temperature"] == 0.2
    assert [m["role"] for m in captured["messages"]] == ["user", "assistant", "user"]
    last = captured["messages"][-1]["content"]
    assert last[0]["type"] == "image"
    assert last[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "iVBORw=="}
    assert last[1] == {"type": "text", "text": "What is this?"}


@pytest.mark.asyncio
async def test_claude_http_429_becomes_rate_limited_rejection():
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={
            "type": "error",
            "error": {"type": "rate_limit_error", "message": "slow down"},
        })

    adapter = ClaudeAdapter(client=client(handler))
    events = await collect(adapter.send_streaming(request_for(account("claude", "claude-test"))))

    assert len(events) == 1
    assert events[0].kind is ErrorKind.PROVIDER_REJECTED
    assert events[0].reason is RejectionReason.RATE_LIMITED
    assert "slow down" in events[0].detail


@pytest.mark.asyncio
async def test_claude_mid_stream_error_event_is_terminal():
    body = sse(
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Par"}},
        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "never"}},
    )
    adapter = ClaudeAdapter(client=client(lambda req: event_stream(body)))

    events = await collect(adapter.send_streaming(request_for(account("claude", "claude-test"))))

    assert events[0] == Delta("Par")
    assert isinstance(events[1], StreamError)
    assert events[1].reason is RejectionReason.OVERLOADED
    assert len(events) == 2


@pytest.mark.asyncio
async def test_transport_failures_map_to_network_and_timeout():
    def refuse(req: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=req)

    def stall(req: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=req)

    acct = account("claude", "claude-test")
    refused = await collect(ClaudeAdapter(client=client(refuse)).send_streaming(request_for(acct)))
    stalled = await collect(ClaudeAdapter(client=client(stall)).send_streaming(request_for(acct)))

    assert refused == [StreamError(kind=ErrorKind.NETWORK, detail="ConnectError: connection refused")]
    assert stalled[0].kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_claude_send_once_returns_joined_text():
    def handler(req: httpx.Request) -> httpx.Response:
        assert "stream" not in json.loads(req.content)
        return httpx.Response(200, json={
            "model": "claude-test",
            "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
            "usage": {"input_tokens": 4, "output_tokens": 2},
        })

    reply = await ClaudeAdapter(client=client(handler)).send_once(request_for(account("claude", "claude-test")))

    assert reply.content == "Hello there"
    assert reply.usage == TokenUsage(4, 2)


@pytest.mark.asyncio
async def test_claude_list_models_auth_failure_raises():
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "invalid x-api-key"}})

    with pytest.raises(ProviderRejected) as exc:
        await ClaudeAdapter(client=client(handler)).list_models(secret="bad")
    assert exc.value.reason is RejectionReason.AUTH


@pytest.mark.asyncio
async def test_claude_list_models_falls_back_when_endpoint_unavailable():
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"type": "not_found_error", "message": "no"}})

    models = await ClaudeAdapter(client=client(handler)).list_models(secret="sk")
    assert models
    assert all(m.id.startswith("claude-") for m in models)


# ---------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------

def gemini_chunk(text: str, **extra) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}], **extra}


@pytest.mark.asyncio
async def test_gemini_stream_translates_and_reports_usage_at_end():
    seen: list[httpx.Request] = []

    def handler(req: httpx.Request) -> httpx.Response:
        seen.append(req)
        return event_stream(sse(
            gemini_chunk("Hel"),
            gemini_chunk("lo!", usageMetadata={"promptTokenCount": 4, "candidatesTokenCount": 2}),
        ))

    adapter = GeminiAdapter(client=client(handler))
    events = await collect(adapter.send_streaming(request_for(account("gemini", "gemini-test"))))

    assert events == [Delta("Hel"), Delta("lo!"), Usage(TokenUsage(4, 2)), Done()]
    assert seen[0].url.path == "/v1beta/models/gemini-test:streamGenerateContent"
    assert seen[0].url.params["alt"] == "sse"
    assert seen[0].headers["x-goog-api-key"] == "sk-test"


@pytest.mark.asyncio
async def test_gemini_payload_uses_model_role_and_system_instruction():
    captured: dict = {}

    def handler(req: httpx.Request) -> httpx.Response:
        captured.update(json.loads(req.content))
        return event_stream(sse(gemini_chunk("ok")))

    req = request_for(
        account("gemini", "gemini-test"),
        history=(ChatTurn(Role.USER, "Hello"), ChatTurn(Role.ASSISTANT, "Hi")),
        system_prompt="Be brief.",
        max_tokens=256,
    )
    await collect(GeminiAdapter(client=client(handler)).send_streaming(req))

    assert [c["role"] for c in captured["contents"]] == ["user", "model", "user"]
    assert captured["systemInstruction"]["parts"] == [{"text": "Be brief."}]
    assert captured["generationConfig"] == {"maxOutputTokens": 256}


@pytest.mark.asyncio
async def test_gemini_blocked_prompt_is_content_policy_rejection():
    body = sse({"promptFeedback": {"blockReason": "SAFETY"}})
    adapter = GeminiAdapter(client=client(lambda req: event_stream(body)))

    events = await collect(adapter.send_streaming(request_for(account("gemini", "gemini-test"))))

    assert len(events) == 1
    assert events[0].kind is ErrorKind.PROVIDER_REJECTED
    assert events[0].reason is RejectionReason.CONTENT_POLICY


@pytest.mark.asyncio
async def test_gemini_list_models_filters_generate_content():
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"models": [
            {"name": "models/gemini-test", "displayName": "Gemini Test",
             "supportedGenerationMethods": ["generateContent"]},
            {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
        ]})

    models = await GeminiAdapter(client=client(handler)).list_models(secret="sk")
    assert [(m.id, m.display_name) for m in models] == [("gemini-test", "Gemini Test")]


# ---------------------------------------------------------------------
# Local (OpenAI-compatible)
# ---------------------------------------------------------------------

MODELS_PAGE = {"object": "list", "data": [{"id": "llama3", "object": "model", "created": 0, "owned_by": "local"}]}


def completion_chunk(content: str | None, *, finish: str | None = None) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "llama3",
        "choices": [{"index": 0, "delta": {"content": content} if content else {}, "finish_reason": finish}],
    }


def local_handler(calls: list[httpx.Request], *, stream_body: bytes) -> Handler:
    def handler(req: httpx.Request) -> httpx.Response:
        calls.append(req)
        if req.url.path.endswith("/models"):
            return httpx.Response(200, json=MODELS_PAGE)
        return event_stream(stream_body)
    return handler


@pytest.mark.asyncio
async def test_local_stream_checks_endpoint_once_then_streams():
    calls: list[httpx.Request] = []
    body = sse(
        completion_chunk("Hel"),
        completion_chunk("lo!"),
        completion_chunk(None, finish="stop"),
        {"id": "chatcmpl-1", "object": "chat.completion.chunk", "created": 0, "model": "llama3",
         "choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
        "[DONE]",
    )
    adapter = LocalCompatibleAdapter(http_client=client(local_handler(calls, stream_body=body)))
    acct = account("local", "llama3", endpoint_url="http://localhost:11434")

    first = await collect(adapter.send_streaming(request_for(acct, secret=None, system_prompt="Be brief.")))
    second = await collect(adapter.send_streaming(request_for(acct, secret=None)))

    assert first == [Delta("Hel"), Delta("lo!"), Usage(TokenUsage(5, 2)), Done()]
    assert second[-1] == Done()
    paths = [c.url.path for c in calls]
    assert paths == ["/v1/models", "/v1/chat/completions", "/v1/chat/completions"]
    sent = json.loads(calls[1].content)
    assert sent["messages"][0] == {"role": "system", "content": "Be brief."}
    assert sent["stream"] is True


@pytest.mark.asyncio
async def test_local_bearer_header_only_when_key_configured():
    calls: list[httpx.Request] = []
    body = sse(completion_chunk("Hi"), completion_chunk(None, finish="stop"), "[DONE]")
    adapter = LocalCompatibleAdapter(http_client=client(local_handler(calls, stream_body=body)))
    acct = account("local", "llama3", endpoint_url="http://localhost:11434")

    keyless = await collect(adapter.send_streaming(request_for(acct, secret=None)))
    keyed = await collect(adapter.send_streaming(request_for(acct, secret="sk-local")))

    assert keyless == [Delta("Hi"), Done()]
    assert keyed == [Delta("Hi"), Done()]
    assert "authorization" not in calls[0].headers
    assert "authorization" not in calls[1].headers
    assert calls[2].headers["authorization"] == "Bearer sk-local"


@pytest.mark.asyncio
async def test_local_list_models_without_key():
    calls: list[httpx.Request] = []
    adapter = LocalCompatibleAdapter(http_client=client(local_handler(calls, stream_body=b"")))

    models = await adapter.list_models(secret=None, endpoint_url="http://localhost:11434")

    assert [m.id for m in models] == ["llama3"]


@pytest.mark.asyncio
async def test_local_unreachable_endpoint_is_network_error():
    def handler(req: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=req)

    adapter = LocalCompatibleAdapter(http_client=client(handler))
    acct = account("local", "llama3", endpoint_url="http://localhost:9")

    events = await collect(adapter.send_streaming(request_for(acct, secret=None)))

    assert len(events) == 1
    assert events[0].kind is ErrorKind.NETWORK


@pytest.mark.asyncio
async def test_local_rejection_keeps_provider_reason():
    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path.endswith("/models"):
            return httpx.Response(200, json=MODELS_PAGE)
        return httpx.Response(400, json={"error": {
            "message": "This model's maximum context length is 4096 tokens",
            "type": "invalid_request_error",
            "code": "context_length_exceeded",
        }})

    adapter = LocalCompatibleAdapter(http_client=client(handler))
    acct = account("local", "llama3", endpoint_url="http://localhost:11434")

    events = await collect(adapter.send_streaming(request_for(acct, secret=None)))

    assert events[-1].kind is ErrorKind.PROVIDER_REJECTED
    assert events[-1].reason is RejectionReason.CONTEXT_LENGTH
