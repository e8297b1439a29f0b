"""
Cancellation protocol runtime.

Responsibilities:
- Implement the Cancel/ACK protocol for an adapter stream pump
- Start ACK timeout timers
- Emit CancelTimeout events
- Perform the hard-reset hook on timeout (via callback)

Non-responsibilities:
- NO retry logic
- NO state machine decisions
- NO run_id generation

This module is infrastructure only.
"""

from __future__ import annotations

import asyncio
import time
from asyncio import Task
from typing import Awaitable, Callable

from echo_chat.constants import CANCEL_ACK_TIMEOUT_MS
from echo_chat.orchestrator.events import CancelTimeout, Event, EventType


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

EventSink = Callable[[Event], Awaitable[None]]
HardResetFn = Callable[[int], None]


# ---------------------------------------------------------------------
# Cancellation Manager
# ---------------------------------------------------------------------

class CancellationManager:
    """
    Runtime manager for the Cancel/ACK protocol.

    Lifecycle:
    1. Reducer emits CloseStream(run_id)
    2. Runtime cancels the pump task and calls request_cancel(run_id)
    3. Manager starts the ACK timeout timer
    4a. Pump closes its stream and reports CancelAck -> notify_ack(...)
    4b. Timer fires -> hard reset + CancelTimeout

    This class never decides what happens next.
    """

    def __init__(
        self,
        *,
        emit_event: EventSink,
        hard_reset: HardResetFn,
        ack_timeout_ms: int = CANCEL_ACK_TIMEOUT_MS,
    ) -> None:
        self._emit_event = emit_event
        self._hard_reset = hard_reset
        self._ack_timeout_ms = ack_timeout_ms
        self._timers: dict[int, Task[None]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_cancel(self, *, run_id: int) -> None:
        """
        Register a cancel request and start the ACK timeout timer.

        Idempotent: duplicate calls for the same run_id are ignored.
        """
        if run_id in self._timers:
            return
        self._timers[run_id] = asyncio.create_task(self._ack_timeout_task(run_id=run_id))

    def notify_ack(self, *, run_id: int) -> None:
        """Stop the ACK timeout timer; the CancelAck event itself flows through the reducer."""
        task = self._timers.pop(run_id, None)
        if task:
            task.cancel()

    def clear_all(self) -> None:
        """Cancel and clear all outstanding ACK timers (turn teardown)."""
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _ack_timeout_task(self, *, run_id: int) -> None:
        try:
            await asyncio.sleep(self._ack_timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        self._timers.pop(run_id, None)
        self._hard_reset(run_id)

        await self._emit_event(
            CancelTimeout(
                event_type=EventType.CANCEL_TIMEOUT,
                ts_ms=time.monotonic_ns() // 1_000_000,
                run_id=run_id,
            )
        )
