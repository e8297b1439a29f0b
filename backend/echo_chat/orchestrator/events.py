"""
Event definitions for the turn reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.

Every event carries the run_id of the turn attempt it belongs to; the
reducer drops events whose run_id is not the active one (stale gating).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from echo_chat.errors import ErrorKind, RejectionReason
from echo_chat.models.message import MessageStatus, TokenUsage


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (state, event_type) pair is explicitly handled or explicitly
    ignored (and logged) by the reducer.
    """

    # ------------------------------------------------------------------
    # Adapter stream
    # ------------------------------------------------------------------
    STREAM_OPENED = "STREAM_OPENED"
    STREAM_DELTA = "STREAM_DELTA"
    STREAM_USAGE = "STREAM_USAGE"
    STREAM_DONE = "STREAM_DONE"
    STREAM_ERROR = "STREAM_ERROR"

    # ------------------------------------------------------------------
    # User control
    # ------------------------------------------------------------------
    CANCEL_REQUESTED = "CANCEL_REQUESTED"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    INACTIVITY_TIMEOUT = "INACTIVITY_TIMEOUT"
    FLUSH_TIMER = "FLUSH_TIMER"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    COMMIT_SUCCEEDED = "COMMIT_SUCCEEDED"
    COMMIT_FAILED = "COMMIT_FAILED"

    # ------------------------------------------------------------------
    # Cancellation protocol
    # ------------------------------------------------------------------
    CANCEL_ACK = "CANCEL_ACK"
    CANCEL_TIMEOUT = "CANCEL_TIMEOUT"


# =============================================================================
# Base Events
# =============================================================================

@dataclass(frozen=True)
class Event:
    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class TurnEvent(Event):
    run_id: int


# =============================================================================
# Adapter Stream Events
# =============================================================================

@dataclass(frozen=True)
class StreamOpened(TurnEvent):
    pass


@dataclass(frozen=True)
class StreamDelta(TurnEvent):
    text: str


@dataclass(frozen=True)
class StreamUsage(TurnEvent):
    usage: TokenUsage


@dataclass(frozen=True)
class StreamDone(TurnEvent):
    pass


@dataclass(frozen=True)
class StreamFailed(TurnEvent):
    kind: ErrorKind
    detail: str
    reason: RejectionReason | None = None


# =============================================================================
# Control / Timer Events
# =============================================================================

@dataclass(frozen=True)
class CancelRequested(TurnEvent):
    pass


@dataclass(frozen=True)
class InactivityTimeout(TurnEvent):
    pass


@dataclass(frozen=True)
class FlushTimerFired(TurnEvent):
    pass


# =============================================================================
# Storage Events
# =============================================================================

@dataclass(frozen=True)
class CommitSucceeded(TurnEvent):
    status: MessageStatus
    content_len: int


@dataclass(frozen=True)
class CommitFailed(TurnEvent):
    status: MessageStatus
    detail: str
    best_effort: bool = False


# =============================================================================
# Cancellation Protocol Events
# =============================================================================

@dataclass(frozen=True)
class CancelAck(TurnEvent):
    pass


@dataclass(frozen=True)
class CancelTimeout(TurnEvent):
    pass
