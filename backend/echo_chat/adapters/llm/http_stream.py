"""
HTTP plumbing shared by the SSE-speaking adapters (Claude, Gemini).

Owns the request/response lifecycle so each adapter only supplies a
wire payload and a FrameTranslator for its event schema.
"""

from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator, Protocol

import httpx

from echo_chat.adapters.llm.error_mapping import (
    error_from_status,
    error_from_transport,
    extract_error,
    classify_rejection,
)
from echo_chat.adapters.llm.sse import SSEFrame, iter_sse_frames
from echo_chat.adapters.llm.stream_events import StreamEvent, is_terminal
from echo_chat.constants import PROVIDER_CONNECT_TIMEOUT_S, PROVIDER_READ_TIMEOUT_S
from echo_chat.errors import NetworkError, ProviderRejected, ProviderTimeout
from echo_chat.observability.logger import log_event


class FrameTranslator(Protocol):
    """Per-stream, stateful translation of provider frames to canonical events."""

    def translate(self, frame: SSEFrame) -> list[StreamEvent]:
        ...

    def finish(self) -> list[StreamEvent]:
        """Events to emit when the transport ends without a terminal frame."""
        ...


def default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROVIDER_READ_TIMEOUT_S, connect=PROVIDER_CONNECT_TIMEOUT_S),
    )


def parse_frame_json(frame: SSEFrame, *, provider: str) -> dict[str, Any] | None:
    """Decode one data frame; unparseable frames are logged and skipped."""
    try:
        payload = json.loads(frame.data)
    except ValueError as e:
        log_event({
            "ts_ms": int(time.time() * 1000),
            "event_type": "PROVIDER_FRAME_UNPARSEABLE",
            "provider": provider,
            "error": str(e),
            "frame_len": len(frame.data),
        })
        return None
    return payload if isinstance(payload, dict) else None


async def stream_sse(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    translator: FrameTranslator,
) -> AsyncIterator[StreamEvent]:
    """
    POST `payload` and translate the SSE response into canonical events.

    Guarantees:
    - Exactly one terminal event, then the generator stops
    - Transport failures become StreamError(network|timeout)
    - Non-2xx responses become StreamError(provider_rejected)
    - Closing the generator closes the HTTP response
    """
    try:
        async with client.stream("POST", url, json=payload, headers=headers) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                yield error_from_status(response.status_code, body)
                return

            async for frame in iter_sse_frames(response.aiter_bytes()):
                for event in translator.translate(frame):
                    yield event
                    if is_terminal(event):
                        return

            for event in translator.finish():
                yield event
                if is_terminal(event):
                    return
    except httpx.HTTPError as exc:
        yield error_from_transport(exc)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Plain JSON request for non-streaming calls.

    Raises the canonical ChatError subclasses instead of returning
    StreamError values.
    """
    try:
        response = await client.request(method, url, json=payload, headers=headers)
    except httpx.TimeoutException as exc:
        raise ProviderTimeout(str(exc) or type(exc).__name__) from exc
    except httpx.HTTPError as exc:
        raise NetworkError(str(exc) or type(exc).__name__) from exc

    if response.status_code >= 400:
        message, error_type = extract_error(response.text)
        detail = f"HTTP {response.status_code}: {message}" if message else f"HTTP {response.status_code}"
        raise ProviderRejected(
            detail,
            reason=classify_rejection(response.status_code, message, error_type),
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderRejected(f"invalid JSON response: {exc}") from exc
    return data if isinstance(data, dict) else {"data": data}
