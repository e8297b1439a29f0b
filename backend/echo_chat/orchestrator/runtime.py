"""
Runtime execution shell for a single assistant turn.

Responsibilities:
- Own the turn snapshot
- Call the pure reducer
- Execute commands with side effects (storage, notifications, timers)
- Pump the adapter stream into events
- Schedule and cancel timers
- Convert timer expiry into events

Non-responsibilities:
- Validation, history assembly, row creation (ChatOrchestrator)
- Any transition decision (reducer)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import AsyncIterator

from echo_chat.adapters.llm.base import ChatRequest
from echo_chat.adapters.llm.stream_events import (
    Delta,
    Done,
    StreamError,
    StreamEvent,
    Usage,
)
from echo_chat.errors import ChatError, ErrorKind, StorageFailure, UnknownMessage, describe_failure
from echo_chat.models.message import MessageStatus
from echo_chat.notifications.events import ConversationUpdated, MessageFinalized
from echo_chat.observability import metrics
from echo_chat.observability.logger import log_event
from echo_chat.orchestrator.cancellation import CancellationManager
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
from echo_chat.orchestrator.enums.turn_state import TERMINAL_STATES
from echo_chat.orchestrator.events import (
    CancelAck,
    CancelRequested,
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
)
from echo_chat.orchestrator.reducer import reduce
from echo_chat.orchestrator.retry import (
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)
from echo_chat.orchestrator.runtime_context import TurnContext
from echo_chat.orchestrator.state_dataclass import TurnSnapshot


def _now_ms() -> int:
    # Monotonic: event timestamps are only compared with each other
    return time.monotonic_ns() // 1_000_000


_TIMER_EVENTS: dict[EventType, type[InactivityTimeout] | type[FlushTimerFired]] = {
    EventType.INACTIVITY_TIMEOUT: InactivityTimeout,
    EventType.FLUSH_TIMER: FlushTimerFired,
}


class TurnRuntime:
    """
    Runtime execution boundary for one turn of one conversation.

    Guarantees:
    - Events are applied one at a time, in arrival order, by a single
      task; the reducer is called exactly once per event
    - State is swapped in before any command executes
    - Commit results are applied before any later event
    - Timers and the stream pump only enqueue events (single entry point)
    - Exactly one FinishTurn is executed; wait() resolves with its status
    """

    def __init__(self, *, snapshot: TurnSnapshot, context: TurnContext) -> None:
        self._state = snapshot
        self._ctx = context

        self._events: asyncio.Queue[Event] = asyncio.Queue()
        # Commit outcomes jump the queue so the reducer sees them next
        self._followups: deque[Event] = deque()

        self._timers: dict[str, asyncio.Task[None]] = {}
        self._pump: asyncio.Task[None] | None = None
        self._pump_started = False
        self._loop_task: asyncio.Task[None] | None = None
        self._finished: asyncio.Future[MessageStatus] = asyncio.get_running_loop().create_future()

        self._first_delta_timer: str | None = None
        self._duration_timer: str | None = None

        self._cancellation = CancellationManager(
            emit_event=self.handle_event,
            hard_reset=self._hard_reset_stream,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnSnapshot:
        """Current immutable snapshot; read-only for callers."""
        return self._state

    @property
    def done(self) -> bool:
        return self._finished.done()

    def start(self) -> None:
        """Start the event loop and the stream pump. Call exactly once."""
        self._duration_timer = metrics.start_timer("turn_duration_ms")
        self._loop_task = asyncio.create_task(
            self._run_events(), name=f"turn-events-{self._state.message_id}"
        )
        self._pump = asyncio.create_task(
            self._run_stream(self._state.run_id), name=f"turn-stream-{self._state.message_id}"
        )

    async def handle_event(self, event: Event) -> None:
        """
        Single entry point for events affecting this turn.

        Never blocks on reducer work: the event is queued and applied by
        the turn's event task.
        """
        if isinstance(event, CancelAck):
            self._cancellation.notify_ack(run_id=event.run_id)
        self._events.put_nowait(event)

    async def cancel(self) -> None:
        await self.handle_event(CancelRequested(
            event_type=EventType.CANCEL_REQUESTED,
            ts_ms=_now_ms(),
            run_id=self._state.run_id,
        ))

    async def wait(self) -> MessageStatus:
        """Resolve with the terminal message status."""
        return await asyncio.shield(self._finished)

    async def shutdown(self) -> None:
        """
        Tear down every task owned by this turn.

        Does not commit anything; callers cancel and wait() first when
        they want a clean terminal state.
        """
        for timer_id in list(self._timers):
            self._cancel_timer(timer_id)
        self._cancellation.clear_all()

        tasks = [t for t in (self._pump, self._loop_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def _run_events(self) -> None:
        try:
            while self._state.state not in TERMINAL_STATES:
                event = self._followups.popleft() if self._followups else await self._events.get()
                await self._apply(event)
        except asyncio.CancelledError:
            if not self._finished.done():
                self._finished.cancel()
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event(self._context_fields({
                "ts_ms": _now_ms(),
                "event_type": "TURN_RUNTIME_CRASHED",
                "state": self._state.state.value,
                "error": repr(e),
            }))
            persisted = await self._fail_after_crash(e)
            if not self._finished.done():
                if persisted:
                    self._finished.set_result(MessageStatus.FAILED)
                else:
                    self._finished.set_exception(e)
            self._notify_finished(MessageStatus.FAILED)
        finally:
            for timer_id in list(self._timers):
                self._cancel_timer(timer_id)

    async def _fail_after_crash(self, error: Exception) -> bool:
        """
        Best-effort terminal write after the event task crashed.

        Stops the stream and stores the content received so far as failed,
        so the row never stays `streaming`. Returns whether the write landed.
        """
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()

        state = self._state
        error_kind = ErrorKind.INTERRUPTED.value
        error_detail = describe_failure(ErrorKind.INTERRUPTED, detail=str(error) or type(error).__name__)
        try:
            await self._ctx.writer.update_message_content(
                state.message_id,
                state.content,
                MessageStatus.FAILED,
                usage=state.usage,
                model=self._ctx.model,
                error_kind=error_kind,
                error_detail=error_detail,
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event(self._context_fields({
                "ts_ms": _now_ms(),
                "event_type": "CRASH_COMMIT_FAILED",
                "error": repr(e),
            }))
            return False

        self._ctx.bus.publish(MessageFinalized(
            conversation_id=state.conversation_id,
            message_id=state.message_id,
            status=MessageStatus.FAILED,
            error_kind=error_kind,
            error_detail=error_detail,
        ))
        self._ctx.bus.publish(ConversationUpdated(conversation_id=state.conversation_id))
        return True

    async def _apply(self, event: Event) -> None:
        prev = self._state
        self._state, commands = reduce(prev, event)

        if prev.delta_count == 0 and self._state.delta_count == 1 and self._first_delta_timer:
            metrics.stop_timer(
                self._first_delta_timer,
                conversation_id=self._state.conversation_id,
                state=self._state.state.value,
                details={"provider": self._ctx.handle.kind.value},
            )
            self._first_delta_timer = None

        for cmd in commands:
            await self._execute_command(cmd)

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:
        if isinstance(cmd, LogEvent):
            log_event(self._context_fields(dict(cmd.event)))

        elif isinstance(cmd, Publish):
            self._ctx.bus.publish(cmd.notification)

        elif isinstance(cmd, PersistContent):
            await self._persist(cmd)

        elif isinstance(cmd, RecordUsage):
            try:
                await self._ctx.writer.add_account_usage(self._state.account_id, cmd.usage)
            except StorageFailure as e:
                # Message is already durable; usage totals are advisory
                log_event(self._context_fields({
                    "ts_ms": _now_ms(),
                    "event_type": "USAGE_RECORD_FAILED",
                    "error": e.detail,
                }))

        elif isinstance(cmd, StartTimer):
            self._start_timer(
                timer_id=cmd.timer_id,
                duration_ms=cmd.duration_ms,
                timeout_event_type=cmd.timeout_event_type,
                run_id=cmd.run_id,
            )

        elif isinstance(cmd, CancelTimer):
            self._cancel_timer(cmd.timer_id)

        elif isinstance(cmd, CloseStream):
            self._close_stream(cmd.run_id)

        elif isinstance(cmd, FinishTurn):
            self._finish(cmd)

        else:
            raise TypeError(f"Unhandled command: {type(cmd).__name__}")

    async def _persist(self, cmd: PersistContent) -> None:
        """
        Write content + status, retrying with increasing backoff.

        Exactly one CommitSucceeded / CommitFailed is queued per command.
        """
        attempt = reset_attempt()
        while True:
            try:
                await self._ctx.writer.update_message_content(
                    self._state.message_id,
                    cmd.content,
                    cmd.status,
                    usage=cmd.usage,
                    model=self._ctx.model,
                    error_kind=cmd.error_kind,
                    error_reason=cmd.error_reason,
                    error_detail=cmd.error_detail,
                )
            except (StorageFailure, UnknownMessage) as e:
                if should_retry(attempt=attempt, best_effort=cmd.best_effort):
                    delay_ms = get_retry_delay_ms(attempt)
                    log_event(self._context_fields({
                        "ts_ms": _now_ms(),
                        "event_type": "COMMIT_RETRY",
                        "status": cmd.status.value,
                        "attempt": attempt.attempt + 1,
                        "delay_ms": delay_ms,
                        "error": e.detail,
                    }))
                    await asyncio.sleep(delay_ms / 1000.0)
                    attempt = next_attempt(attempt)
                    continue

                self._followups.append(CommitFailed(
                    event_type=EventType.COMMIT_FAILED,
                    ts_ms=_now_ms(),
                    run_id=cmd.run_id,
                    status=cmd.status,
                    detail=e.detail or e.describe(),
                    best_effort=cmd.best_effort,
                ))
                return

            self._followups.append(CommitSucceeded(
                event_type=EventType.COMMIT_SUCCEEDED,
                ts_ms=_now_ms(),
                run_id=cmd.run_id,
                status=cmd.status,
                content_len=len(cmd.content),
            ))
            return

    def _finish(self, cmd: FinishTurn) -> None:
        if self._first_delta_timer:
            metrics.discard_timer(self._first_delta_timer)
            self._first_delta_timer = None
        if self._duration_timer:
            metrics.stop_timer(
                self._duration_timer,
                conversation_id=self._state.conversation_id,
                state=self._state.state.value,
                details={
                    "provider": self._ctx.handle.kind.value,
                    "status": cmd.status.value,
                    "delta_count": self._state.delta_count,
                },
            )
            self._duration_timer = None

        if not self._finished.done():
            self._finished.set_result(cmd.status)
        self._notify_finished(cmd.status)

    def _notify_finished(self, status: MessageStatus) -> None:
        if self._ctx.on_finished is not None:
            self._ctx.on_finished(self._state.conversation_id, status)

    # ------------------------------------------------------------------
    # Adapter stream
    # ------------------------------------------------------------------

    def _open_stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        handle = self._ctx.handle
        if self._ctx.stream_responses and handle.capability.supports_streaming:
            return handle.send_streaming(request)
        return self._send_once_as_stream(request)

    async def _send_once_as_stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Non-streaming completion presented as a one-delta stream."""
        try:
            reply = await self._ctx.handle.send_once(request)
        except ChatError as e:
            yield StreamError(kind=e.kind, detail=e.detail, reason=e.reason)
            return
        if reply.content:
            yield Delta(reply.content)
        if reply.usage is not None:
            yield Usage(reply.usage)
        yield Done()

    async def _run_stream(self, run_id: int) -> None:
        self._pump_started = True
        stream = self._open_stream(self._ctx.request)
        self._first_delta_timer = metrics.start_timer("turn_first_delta_ms")
        await self.handle_event(StreamOpened(
            event_type=EventType.STREAM_OPENED, ts_ms=_now_ms(), run_id=run_id,
        ))

        saw_delta = False
        try:
            async for item in stream:
                event = _to_event(item, run_id)
                if event is None:
                    continue
                saw_delta = saw_delta or isinstance(item, Delta)
                await self.handle_event(event)
                if isinstance(item, (Done, StreamError)):
                    return

            # Stream ended without a terminal event
            if saw_delta:
                await self.handle_event(StreamDone(
                    event_type=EventType.STREAM_DONE, ts_ms=_now_ms(), run_id=run_id,
                ))
            else:
                await self.handle_event(StreamFailed(
                    event_type=EventType.STREAM_ERROR,
                    ts_ms=_now_ms(),
                    run_id=run_id,
                    kind=ErrorKind.NETWORK,
                    detail="stream ended unexpectedly",
                ))

        except asyncio.CancelledError:
            await _aclose(stream)
            await self.handle_event(CancelAck(
                event_type=EventType.CANCEL_ACK, ts_ms=_now_ms(), run_id=run_id,
            ))

        except ChatError as e:
            await self.handle_event(StreamFailed(
                event_type=EventType.STREAM_ERROR,
                ts_ms=_now_ms(),
                run_id=run_id,
                kind=e.kind,
                detail=e.detail,
                reason=e.reason,
            ))

        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event(self._context_fields({
                "ts_ms": _now_ms(),
                "event_type": "STREAM_PUMP_CRASHED",
                "provider": self._ctx.handle.kind.value,
                "error": repr(e),
            }))
            await self.handle_event(StreamFailed(
                event_type=EventType.STREAM_ERROR,
                ts_ms=_now_ms(),
                run_id=run_id,
                kind=ErrorKind.NETWORK,
                detail=str(e) or type(e).__name__,
            ))

    def _close_stream(self, run_id: int) -> None:
        """Stop reading the adapter stream; completion is reported via CancelAck."""
        pump = self._pump
        if pump is None or pump.done():
            return
        pump.cancel()
        if not self._pump_started:
            # Cancelled before its first step: the pump body never runs to ack
            self._events.put_nowait(CancelAck(
                event_type=EventType.CANCEL_ACK, ts_ms=_now_ms(), run_id=run_id,
            ))
            return
        self._cancellation.request_cancel(run_id=run_id)

    def _hard_reset_stream(self, run_id: int) -> None:
        """
        Last resort after the ACK timeout: detach from the pump.

        The connection is owned by the pump's stream and is released when
        that task finally unwinds.
        """
        log_event(self._context_fields({
            "ts_ms": _now_ms(),
            "event_type": "STREAM_HARD_RESET",
            "run_id": run_id,
        }))
        self._pump = None

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def _start_timer(
        self,
        *,
        timer_id: str,
        duration_ms: int,
        timeout_event_type: EventType,
        run_id: int,
    ) -> None:
        """
        Start or replace a timer that emits a timeout event.

        Timer tasks re-enter handle_event() when they expire,
        maintaining the single event entry point invariant.
        """
        self._cancel_timer(timer_id)
        event_cls = _TIMER_EVENTS.get(timeout_event_type)
        if event_cls is None:
            raise ValueError(f"Unknown timeout event type: {timeout_event_type} for timer_id: {timer_id}")

        async def _timer_task() -> None:
            try:
                await asyncio.sleep(duration_ms / 1000.0)
                await self.handle_event(event_cls(
                    event_type=timeout_event_type,
                    ts_ms=_now_ms(),
                    run_id=run_id,
                ))
            except asyncio.CancelledError:
                return

        self._timers[timer_id] = asyncio.create_task(_timer_task())

    def _cancel_timer(self, timer_id: str) -> None:
        """Idempotent: safe to call even if the timer doesn't exist."""
        task = self._timers.pop(timer_id, None)
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _context_fields(self, event: dict) -> dict:
        return {
            **event,
            "conversation_id": self._state.conversation_id,
            "message_id": self._state.message_id,
        }


def _to_event(item: StreamEvent, run_id: int) -> Event | None:
    ts = _now_ms()
    if isinstance(item, Delta):
        if not item.text:
            return None
        return StreamDelta(event_type=EventType.STREAM_DELTA, ts_ms=ts, run_id=run_id, text=item.text)
    if isinstance(item, Usage):
        return StreamUsage(event_type=EventType.STREAM_USAGE, ts_ms=ts, run_id=run_id, usage=item.usage)
    if isinstance(item, Done):
        return StreamDone(event_type=EventType.STREAM_DONE, ts_ms=ts, run_id=run_id)
    if isinstance(item, StreamError):
        return StreamFailed(
            event_type=EventType.STREAM_ERROR,
            ts_ms=ts,
            run_id=run_id,
            kind=item.kind,
            detail=item.detail,
            reason=item.reason,
        )
    return None


async def _aclose(stream: AsyncIterator[StreamEvent]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
