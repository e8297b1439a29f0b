"""
Authoritative turn state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need for one turn,
  including the timing policy, so the reducer reads no globals.
- No behavior beyond trivial derived properties.
"""

from __future__ import annotations

from dataclasses import dataclass

from echo_chat.constants import (
    COMMIT_BATCH_INTERVAL_MS,
    COMMIT_BATCH_MAX_BYTES,
    TURN_INACTIVITY_TIMEOUT_MS,
)
from echo_chat.models.message import TokenUsage
from echo_chat.orchestrator.enums.turn_kind import TurnKind
from echo_chat.orchestrator.enums.turn_state import TurnState


@dataclass(frozen=True)
class TurnPolicy:
    inactivity_timeout_ms: int = TURN_INACTIVITY_TIMEOUT_MS
    flush_interval_ms: int = COMMIT_BATCH_INTERVAL_MS
    flush_max_bytes: int = COMMIT_BATCH_MAX_BYTES


@dataclass(frozen=True)
class FlushTimerState:
    """
    Commit-batching timer.

    - Starts when pending (uncommitted) content goes empty -> non-empty
    - Elapsed is computed from event timestamps
    - Reset whenever a flush is issued
    """
    active: bool = False
    start_ts_ms: int = 0


@dataclass(frozen=True)
class TurnSnapshot:
    """Immutable snapshot of one turn; never shared mutably outside the runtime."""

    conversation_id: str
    message_id: str
    account_id: str
    run_id: int
    kind: TurnKind = TurnKind.SEND
    policy: TurnPolicy = TurnPolicy()

    state: TurnState = TurnState.DISPATCHING

    # Full in-memory content of the assistant message for this attempt
    content: str = ""

    # Length of `content` handed to storage so far
    committed_len: int = 0

    flush_timer: FlushTimerState = FlushTimerState()

    delta_count: int = 0
    usage: TokenUsage | None = None

    # Set when the turn is failing / failed
    error_kind: str | None = None
    error_reason: str | None = None
    error_detail: str | None = None

    @property
    def pending(self) -> str:
        """Content received but not yet committed."""
        return self.content[self.committed_len:]
