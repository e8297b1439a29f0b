"""
Side-effect command definitions for the turn reducer.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the runtime.
- No behavior, no async, no I/O, no clocks.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from echo_chat.models.message import MessageStatus, TokenUsage
from echo_chat.notifications.events import Notification
from echo_chat.orchestrator.events import EventType

# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    Stable discriminants used for logging and runtime dispatch.
    """

    # Storage
    PERSIST_CONTENT = "PERSIST_CONTENT"
    RECORD_USAGE = "RECORD_USAGE"

    # Adapter stream
    CLOSE_STREAM = "CLOSE_STREAM"

    # Presentation
    PUBLISH = "PUBLISH"

    # Lifecycle
    FINISH_TURN = "FINISH_TURN"

    # Timers
    START_TIMER = "START_TIMER"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Storage Commands
# =============================================================================

@dataclass(frozen=True)
class PersistContent(Command):
    """
    Write the assistant message's content and status in one atomic update.

    The runtime retries with backoff and reports CommitSucceeded or
    CommitFailed. A best-effort write is attempted once and never
    reported as a new failure.
    """
    run_id: int
    content: str
    status: MessageStatus
    usage: TokenUsage | None = None
    error_kind: str | None = None
    error_reason: str | None = None
    error_detail: str | None = None
    best_effort: bool = False
    command_type: CommandType = CommandType.PERSIST_CONTENT


@dataclass(frozen=True)
class RecordUsage(Command):
    """Add provider-reported token usage to the account totals."""
    usage: TokenUsage
    command_type: CommandType = CommandType.RECORD_USAGE


# =============================================================================
# Adapter Stream Commands
# =============================================================================

@dataclass(frozen=True)
class CloseStream(Command):
    """Close the adapter stream for run_id; starts the cancel/ACK protocol."""
    run_id: int
    command_type: CommandType = CommandType.CLOSE_STREAM


# =============================================================================
# Presentation Commands
# =============================================================================

@dataclass(frozen=True)
class Publish(Command):
    notification: Notification
    command_type: CommandType = CommandType.PUBLISH


# =============================================================================
# Lifecycle Commands
# =============================================================================

@dataclass(frozen=True)
class FinishTurn(Command):
    """Turn reached a terminal state; release the conversation slot."""
    run_id: int
    status: MessageStatus
    command_type: CommandType = CommandType.FINISH_TURN


# =============================================================================
# Timer Commands
# =============================================================================

@dataclass(frozen=True)
class StartTimer(Command):
    """
    Start (or restart) a one-shot timer.

    Starting a timer id that is already running replaces it.
    """
    timer_id: str
    duration_ms: int
    timeout_event_type: EventType
    run_id: int
    command_type: CommandType = CommandType.START_TIMER


@dataclass(frozen=True)
class CancelTimer(Command):
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """
    Structured log record.

    The runtime adds conversation / message context before writing.
    """
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
