"""
Metrics and timing helpers.

Responsibilities:
- Measure durations using monotonic time (immune to clock changes)
- Emit metrics as JSONL events via observability.logger
- Never aggregate: one metric = one log event

Metrics emitted by the turn runtime:
- turn_first_delta_ms: stream opened to first delta applied
- turn_duration_ms: turn dispatched to terminal state
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any

from echo_chat.observability import logger


# -----------------------------------------------------------------------------
# Internal timer storage
# -----------------------------------------------------------------------------
# timer_id -> (metric_name, start_time_ns)
_active_timers: dict[str, tuple[str, int]] = {}


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def start_timer(name: str) -> str:
    """
    Start a monotonic timer.

    Returns:
        timer_id (str): Opaque ID required to stop the timer later.

    Callers MUST eventually call stop_timer() or discard_timer()
    unless using the `timed()` context manager.
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    conversation_id: str | None = None,
    state: str | None = None,
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Stop a previously started timer and emit a metric event.

    Returns:
        duration_ms if the timer existed, else None
    """
    entry = _active_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, start_ns = entry
    duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000

    logger.log_event({
        # Wall-clock timestamp for log correlation
        "ts_ms": int(time.time() * 1000),
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        "conversation_id": conversation_id,
        "state": state,
        "details": details or {},
    })

    return duration_ms


def discard_timer(timer_id: str) -> None:
    """Drop a timer without emitting (metric not applicable)."""
    _active_timers.pop(timer_id, None)


# -----------------------------------------------------------------------------
# Safe API: context manager
# -----------------------------------------------------------------------------

@contextmanager
def timed(
    name: str,
    *,
    conversation_id: str | None = None,
    state: str | None = None,
    details: dict[str, Any] | None = None,
):
    """
    Context manager for measuring durations safely.

    Guarantees:
    - Timer is ALWAYS stopped (no leaks)
    - Metric is emitted exactly once
    - Exceptions inside the block do NOT suppress timing

    Usage:
        with timed("provider_list_models_ms", details={"provider": "claude"}):
            await adapter.list_models(...)
    """
    timer_id = start_timer(name)
    try:
        yield
    finally:
        stop_timer(
            timer_id,
            conversation_id=conversation_id,
            state=state,
            details=details,
        )
