"""
Provider error classification.

Maps HTTP status codes and provider error payloads onto the canonical
ErrorKind / RejectionReason pair. Shared by every adapter so the same
remote condition always surfaces the same way.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from echo_chat.adapters.llm.stream_events import StreamError
from echo_chat.constants import PROVIDER_ERROR_DETAIL_MAX_CHARS
from echo_chat.errors import ErrorKind, RejectionReason

_CONTEXT_MARKERS = (
    "context length",
    "context_length",
    "context window",
    "prompt is too long",
    "too many tokens",
    "maximum context",
    "exceeds the maximum",
)

# Provider error "type" / "status" strings
_TYPE_REASONS: dict[str, RejectionReason] = {
    "rate_limit_error": RejectionReason.RATE_LIMITED,
    "resource_exhausted": RejectionReason.RATE_LIMITED,
    "rate_limit_exceeded": RejectionReason.RATE_LIMITED,
    "authentication_error": RejectionReason.AUTH,
    "permission_error": RejectionReason.AUTH,
    "unauthenticated": RejectionReason.AUTH,
    "permission_denied": RejectionReason.AUTH,
    "invalid_api_key": RejectionReason.AUTH,
    "overloaded_error": RejectionReason.OVERLOADED,
    "unavailable": RejectionReason.OVERLOADED,
    "context_length_exceeded": RejectionReason.CONTEXT_LENGTH,
    "content_filter": RejectionReason.CONTENT_POLICY,
    "safety": RejectionReason.CONTENT_POLICY,
}


def classify_rejection(
    status: int | None,
    message: str = "",
    error_type: str | None = None,
) -> RejectionReason:
    """Pick the rejection sub-kind from status code, payload type and message."""
    lowered = message.lower()
    if any(marker in lowered for marker in _CONTEXT_MARKERS):
        return RejectionReason.CONTEXT_LENGTH

    if error_type:
        reason = _TYPE_REASONS.get(error_type.lower())
        if reason is not None:
            return reason

    if status in (401, 403):
        return RejectionReason.AUTH
    if status == 429:
        return RejectionReason.RATE_LIMITED
    if status in (503, 529):
        return RejectionReason.OVERLOADED
    return RejectionReason.OTHER


def extract_error(body: str) -> tuple[str, str | None]:
    """
    Pull (message, type) out of a provider error body.

    Handles {"error": {"message", "type"|"status"|"code"}} (all three
    providers) and falls back to the raw text.
    """
    try:
        payload: Any = json.loads(body)
    except ValueError:
        return _truncate(body.strip()), None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or "")
        error_type = error.get("type") or error.get("status") or error.get("code")
        return _truncate(message or body.strip()), (str(error_type) if error_type else None)
    if isinstance(error, str):
        return _truncate(error), None
    return _truncate(body.strip()), None


def error_from_status(status: int, body: str) -> StreamError:
    message, error_type = extract_error(body)
    return StreamError(
        kind=ErrorKind.PROVIDER_REJECTED,
        detail=f"HTTP {status}: {message}" if message else f"HTTP {status}",
        reason=classify_rejection(status, message, error_type),
    )


def error_from_payload(error: Any) -> StreamError:
    """Structured error delivered inside a stream (e.g. an SSE `error` event)."""
    if isinstance(error, dict):
        message = str(error.get("message") or "")
        error_type = error.get("type") or error.get("status") or error.get("code")
        status = error.get("code") if isinstance(error.get("code"), int) else None
    else:
        message, error_type, status = str(error), None, None
    return StreamError(
        kind=ErrorKind.PROVIDER_REJECTED,
        detail=_truncate(message),
        reason=classify_rejection(status, message, str(error_type) if error_type else None),
    )


def error_from_transport(exc: httpx.HTTPError) -> StreamError:
    if isinstance(exc, httpx.TimeoutException):
        return StreamError(kind=ErrorKind.TIMEOUT, detail=_describe(exc))
    return StreamError(kind=ErrorKind.NETWORK, detail=_describe(exc))


def _describe(exc: Exception) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _truncate(text: str) -> str:
    if len(text) <= PROVIDER_ERROR_DETAIL_MAX_CHARS:
        return text
    return text[:PROVIDER_ERROR_DETAIL_MAX_CHARS] + "..."
