"""
Turn state enumeration.

Rules:
- This enum defines ONLY the control-plane states of one turn.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class TurnState(str, Enum):
    """
    Lifecycle of a single in-flight turn.

    IDLE -> DISPATCHING -> STREAMING -> {FINALIZING, CANCELLING, FAILING}
         -> {COMPLETE, CANCELLED, FAILED}

    FINALIZING / CANCELLING / FAILING mean "terminal commit in flight".
    """

    IDLE = "IDLE"
    DISPATCHING = "DISPATCHING"
    STREAMING = "STREAMING"
    FINALIZING = "FINALIZING"
    CANCELLING = "CANCELLING"
    FAILING = "FAILING"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


# Stream events are applied only in these states
RECEIVING_STATES = frozenset({TurnState.DISPATCHING, TurnState.STREAMING})

# Terminal commit is in flight
CLOSING_STATES = frozenset({TurnState.FINALIZING, TurnState.CANCELLING, TurnState.FAILING})

TERMINAL_STATES = frozenset({TurnState.COMPLETE, TurnState.CANCELLED, TurnState.FAILED})
