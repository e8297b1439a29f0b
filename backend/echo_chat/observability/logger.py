"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Secret-bearing keys are redacted before serialization
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
from typing import Any, Mapping, Callable

from echo_chat.constants import REDACTED_LOG_KEYS, REDACTED_PLACEHOLDER


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_enabled: bool = True

_REDACTED = frozenset(REDACTED_LOG_KEYS)


def set_enabled(enabled: bool) -> None:
    """Turn JSONL output on or off (ENABLE_JSON_LOGS)."""
    global _enabled
    _enabled = enabled


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: (REDACTED_PLACEHOLDER if str(k).lower() in _REDACTED else _redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller is responsible for:
    - Supplying a fully-formed event dict
    - Including ts_ms, event_type, conversation_id, etc.

    This function:
    - Redacts secret-bearing keys at any nesting depth
    - Serializes to JSON
    - Writes exactly one line
    - Never raises
    """
    if not _enabled:
        return

    try:
        line = json.dumps(_redact(event), ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback, logging must never crash the runtime
        fallback: dict[str, Any] = {
            "ts_ms": event.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_type": str(event.get("event_type")),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
