"""
Pure turn reducer.

(snapshot, event) -> (new_snapshot, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).
"""

# Reducer owns timer semantics; runtime must not cancel timers implicitly.

from __future__ import annotations

from dataclasses import replace
from typing import Any

from echo_chat.errors import ErrorKind, describe_failure
from echo_chat.models.message import MessageStatus
from echo_chat.notifications.events import (
    ConversationUpdated,
    MessageDelta,
    MessageFinalized,
)
from echo_chat.orchestrator.commands import (
    CancelTimer,
    CloseStream,
    Command,
    FinishTurn,
    LogEvent,
    PersistContent,
    Publish,
    RecordUsage,
    StartTimer,
)
from echo_chat.orchestrator.enums.turn_kind import TurnKind
from echo_chat.orchestrator.enums.turn_state import (
    CLOSING_STATES,
    RECEIVING_STATES,
    TurnState,
)
from echo_chat.orchestrator.events import (
    CancelAck,
    CancelRequested,
    CancelTimeout,
    CommitFailed,
    CommitSucceeded,
    Event,
    EventType,
    FlushTimerFired,
    InactivityTimeout,
    StreamDelta,
    StreamDone,
    StreamFailed,
    StreamOpened,
    StreamUsage,
    TurnEvent,
)
from echo_chat.orchestrator.flush_policy import FlushTrigger, evaluate_flush
from echo_chat.orchestrator.state_dataclass import FlushTimerState, TurnSnapshot

# =============================================================================
# Invariants
# =============================================================================
# - Content only grows, and only in DISPATCHING / STREAMING
# - Exactly one terminal commit is issued per turn (plus at most one
#   best-effort failure write after a storage failure)
# - Events for another run_id never mutate state
# - Cancel in any non-receiving state is a logged no-op

# =============================================================================
# Timer IDs
# =============================================================================

TIMER_INACTIVITY = "turn_inactivity_timeout"
TIMER_FLUSH = "commit_flush"

_Result = tuple[TurnSnapshot, tuple[Command, ...]]

_TERMINAL_FOR: dict[MessageStatus, TurnState] = {
    MessageStatus.COMPLETE: TurnState.COMPLETE,
    MessageStatus.CANCELLED: TurnState.CANCELLED,
    MessageStatus.FAILED: TurnState.FAILED,
}

_EXPECTED_COMMIT: dict[TurnState, MessageStatus] = {
    TurnState.FINALIZING: MessageStatus.COMPLETE,
    TurnState.CANCELLING: MessageStatus.CANCELLED,
    TurnState.FAILING: MessageStatus.FAILED,
}


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: TurnSnapshot,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(event={
        "ts_ms": event.ts_ms,
        "event_type": event.event_type.value,
        "state": state.state.value,
        "run_id": state.run_id,
        "decision": decision,
        "details": details or {},
    })


def _ignore(state: TurnSnapshot, event: Event, reason: str) -> _Result:
    return state, (_log(state, event, "ignored", {"reason": reason}),)


def _transition(
    prev: TurnSnapshot,
    new: TurnSnapshot,
    event: Event,
    commands: list[Command],
    details: dict[str, Any] | None = None,
) -> _Result:
    """Append the state-change log record last so it reflects the outcome."""
    if prev.state is not new.state:
        commands.append(_log(new, event, "state_changed", {
            "from": prev.state.value,
            "to": new.state.value,
            **(details or {}),
        }))
    return new, tuple(commands)


def _restart_inactivity(state: TurnSnapshot) -> StartTimer:
    return StartTimer(
        timer_id=TIMER_INACTIVITY,
        duration_ms=state.policy.inactivity_timeout_ms,
        timeout_event_type=EventType.INACTIVITY_TIMEOUT,
        run_id=state.run_id,
    )


def _cancel_timers() -> list[Command]:
    return [CancelTimer(TIMER_INACTIVITY), CancelTimer(TIMER_FLUSH)]


def _flush(state: TurnSnapshot, trigger: FlushTrigger) -> tuple[TurnSnapshot, list[Command]]:
    """Commit everything received so far as one atomic write."""
    new_state = replace(
        state,
        committed_len=len(state.content),
        flush_timer=FlushTimerState(),
    )
    return new_state, [
        PersistContent(
            run_id=state.run_id,
            content=state.content,
            status=MessageStatus.STREAMING,
            usage=state.usage,
        ),
        CancelTimer(TIMER_FLUSH),
    ]


def _terminal_commit(state: TurnSnapshot, status: MessageStatus, *, best_effort: bool = False) -> PersistContent:
    return PersistContent(
        run_id=state.run_id,
        content=state.content,
        status=status,
        usage=state.usage,
        error_kind=state.error_kind,
        error_reason=state.error_reason,
        error_detail=state.error_detail,
        best_effort=best_effort,
    )


def _enter_failing(
    state: TurnSnapshot,
    kind: ErrorKind,
    detail: str,
    reason: str | None = None,
) -> TurnSnapshot:
    return replace(
        state,
        state=TurnState.FAILING,
        committed_len=len(state.content),
        flush_timer=FlushTimerState(),
        error_kind=kind.value,
        error_reason=reason,
        error_detail=describe_failure(kind, reason, detail),
    )


def _finish(state: TurnSnapshot, event: Event, status: MessageStatus) -> _Result:
    new_state = replace(state, state=_TERMINAL_FOR[status])
    commands: list[Command] = []
    if state.usage is not None:
        commands.append(RecordUsage(usage=state.usage))
    commands += [
        Publish(MessageFinalized(
            conversation_id=state.conversation_id,
            message_id=state.message_id,
            status=status,
            error_kind=state.error_kind if status is MessageStatus.FAILED else None,
            error_detail=state.error_detail if status is MessageStatus.FAILED else None,
        )),
        Publish(ConversationUpdated(conversation_id=state.conversation_id)),
    ]
    # Publish and FinishTurn run back to back: the slot is free before
    # any subscriber observes MessageFinalized
    commands.append(FinishTurn(run_id=state.run_id, status=status))
    return _transition(state, new_state, event, commands, {
        "content_len": len(state.content),
        "delta_count": state.delta_count,
        "error_kind": state.error_kind,
    })


# =============================================================================
# Stream events
# =============================================================================

def _on_stream_opened(state: TurnSnapshot, event: StreamOpened) -> _Result:
    if state.state is not TurnState.DISPATCHING:
        return _ignore(state, event, "not_dispatching")
    new_state = replace(state, state=TurnState.STREAMING)
    return _transition(state, new_state, event, [_restart_inactivity(new_state)])


def _on_delta(state: TurnSnapshot, event: StreamDelta) -> _Result:
    if state.state not in RECEIVING_STATES:
        return _ignore(state, event, "not_receiving")
    if not event.text:
        return _ignore(state, event, "empty_delta")

    reset = state.kind is TurnKind.REGENERATE and state.delta_count == 0
    new_state = replace(
        state,
        state=TurnState.STREAMING,
        content=state.content + event.text,
        delta_count=state.delta_count + 1,
    )
    commands: list[Command] = [
        Publish(MessageDelta(
            conversation_id=state.conversation_id,
            message_id=state.message_id,
            text_appended=event.text,
            reset_content=reset,
        )),
        _restart_inactivity(new_state),
    ]

    if not new_state.flush_timer.active:
        new_state = replace(new_state, flush_timer=FlushTimerState(active=True, start_ts_ms=event.ts_ms))
        commands.append(StartTimer(
            timer_id=TIMER_FLUSH,
            duration_ms=new_state.policy.flush_interval_ms,
            timeout_event_type=EventType.FLUSH_TIMER,
            run_id=new_state.run_id,
        ))

    decision = evaluate_flush(
        pending=new_state.pending,
        elapsed_ms=event.ts_ms - new_state.flush_timer.start_ts_ms,
        max_bytes=new_state.policy.flush_max_bytes,
        interval_ms=new_state.policy.flush_interval_ms,
    )
    if decision.flush and decision.trigger is not None:
        new_state, flush_commands = _flush(new_state, decision.trigger)
        commands.extend(flush_commands)
        commands.append(_log(new_state, event, "flush", {
            "trigger": decision.trigger.value,
            "pending_bytes": decision.pending_bytes,
        }))

    return _transition(state, new_state, event, commands)


def _on_usage(state: TurnSnapshot, event: StreamUsage) -> _Result:
    if state.state not in RECEIVING_STATES:
        return _ignore(state, event, "not_receiving")
    usage = state.usage.merge(event.usage) if state.usage is not None else event.usage
    new_state = replace(state, usage=usage)
    return new_state, (_restart_inactivity(new_state),)


def _on_done(state: TurnSnapshot, event: StreamDone) -> _Result:
    if state.state not in RECEIVING_STATES:
        return _ignore(state, event, "not_receiving")
    new_state = replace(
        state,
        state=TurnState.FINALIZING,
        committed_len=len(state.content),
        flush_timer=FlushTimerState(),
    )
    commands = _cancel_timers() + [_terminal_commit(new_state, MessageStatus.COMPLETE)]
    return _transition(state, new_state, event, commands)


def _on_stream_failed(state: TurnSnapshot, event: StreamFailed) -> _Result:
    if state.state not in RECEIVING_STATES:
        return _ignore(state, event, "not_receiving")
    reason = event.reason.value if event.reason is not None else None
    new_state = _enter_failing(state, event.kind, event.detail, reason)
    commands = _cancel_timers() + [_terminal_commit(new_state, MessageStatus.FAILED)]
    return _transition(state, new_state, event, commands, {
        "error_kind": event.kind.value,
        "reason": reason,
    })


# =============================================================================
# Control / timer events
# =============================================================================

def _on_cancel(state: TurnSnapshot, event: CancelRequested) -> _Result:
    if state.state not in RECEIVING_STATES:
        # Idempotent: cancelling a closing or finished turn is a no-op
        return _ignore(state, event, "cancel_noop")
    new_state = replace(
        state,
        state=TurnState.CANCELLING,
        committed_len=len(state.content),
        flush_timer=FlushTimerState(),
    )
    commands = _cancel_timers() + [
        CloseStream(run_id=state.run_id),
        _terminal_commit(new_state, MessageStatus.CANCELLED),
    ]
    return _transition(state, new_state, event, commands)


def _on_inactivity_timeout(state: TurnSnapshot, event: InactivityTimeout) -> _Result:
    if state.state not in RECEIVING_STATES:
        return _ignore(state, event, "not_receiving")
    seconds = state.policy.inactivity_timeout_ms / 1000
    new_state = _enter_failing(
        state,
        ErrorKind.TIMEOUT,
        f"no response from the provider for {seconds:g}s",
    )
    commands = [CancelTimer(TIMER_FLUSH), CloseStream(run_id=state.run_id)]
    commands.append(_terminal_commit(new_state, MessageStatus.FAILED))
    return _transition(state, new_state, event, commands)


def _on_flush_timer(state: TurnSnapshot, event: FlushTimerFired) -> _Result:
    if state.state is not TurnState.STREAMING:
        return _ignore(state, event, "not_streaming")
    if not state.pending:
        return _ignore(state, event, "nothing_pending")
    new_state, commands = _flush(state, FlushTrigger.TIME)
    commands.append(_log(new_state, event, "flush", {"trigger": FlushTrigger.TIME.value}))
    return new_state, tuple(commands)


# =============================================================================
# Storage events
# =============================================================================

def _on_commit_succeeded(state: TurnSnapshot, event: CommitSucceeded) -> _Result:
    if event.status is MessageStatus.STREAMING:
        return state, (_log(state, event, "committed", {"content_len": event.content_len}),)
    if _EXPECTED_COMMIT.get(state.state) is not event.status:
        return _ignore(state, event, "unexpected_commit")
    return _finish(state, event, event.status)


def _on_commit_failed(state: TurnSnapshot, event: CommitFailed) -> _Result:
    if event.best_effort:
        # Already failing for storage reasons; end the turn regardless
        if state.state is not TurnState.FAILING:
            return _ignore(state, event, "unexpected_commit")
        return _finish(state, event, MessageStatus.FAILED)

    if event.status is MessageStatus.STREAMING:
        if state.state not in RECEIVING_STATES:
            # A terminal commit supersedes the failed batch
            return _ignore(state, event, "superseded_by_terminal_commit")
        new_state = _enter_failing(state, ErrorKind.STORAGE_FAILURE, event.detail)
        commands = _cancel_timers() + [
            CloseStream(run_id=state.run_id),
            _terminal_commit(new_state, MessageStatus.FAILED, best_effort=True),
        ]
        return _transition(state, new_state, event, commands)

    if state.state not in CLOSING_STATES or _EXPECTED_COMMIT[state.state] is not event.status:
        return _ignore(state, event, "unexpected_commit")

    new_state = _enter_failing(state, ErrorKind.STORAGE_FAILURE, event.detail)
    commands = [_terminal_commit(new_state, MessageStatus.FAILED, best_effort=True)]
    return _transition(state, new_state, event, commands)


# =============================================================================
# Reducer
# =============================================================================

def reduce(state: TurnSnapshot, event: Event) -> _Result:
    """
    Apply one event to one turn.

    Returns the new snapshot and the commands the runtime must execute,
    in order.
    """
    if isinstance(event, TurnEvent) and event.run_id != state.run_id:
        return _ignore(state, event, "stale_run_id")

    if isinstance(event, StreamOpened):
        return _on_stream_opened(state, event)
    if isinstance(event, StreamDelta):
        return _on_delta(state, event)
    if isinstance(event, StreamUsage):
        return _on_usage(state, event)
    if isinstance(event, StreamDone):
        return _on_done(state, event)
    if isinstance(event, StreamFailed):
        return _on_stream_failed(state, event)
    if isinstance(event, CancelRequested):
        return _on_cancel(state, event)
    if isinstance(event, InactivityTimeout):
        return _on_inactivity_timeout(state, event)
    if isinstance(event, FlushTimerFired):
        return _on_flush_timer(state, event)
    if isinstance(event, CommitSucceeded):
        return _on_commit_succeeded(state, event)
    if isinstance(event, CommitFailed):
        return _on_commit_failed(state, event)
    if isinstance(event, (CancelAck, CancelTimeout)):
        # Protocol bookkeeping happens in the runtime; record only
        return state, (_log(state, event, "cancel_protocol"),)

    return _ignore(state, event, "unhandled_event")
