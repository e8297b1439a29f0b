"""
Pure commit-batching policy.

This module contains NO side effects and NO timing primitives.
It is a deterministic function over:
- the pending (uncommitted) content
- elapsed time since pending content first appeared

IMPORTANT CONTRACT WITH REDUCER / RUNTIME:

- This module never starts, stops, or resets timers.
- When `flush=True` is returned the caller commits the FULL content
  (one atomic write) and resets the flush timer.
- When `flush=False` is returned with pending content, the caller keeps
  the flush timer running so a slow stream still commits within the
  interval.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from echo_chat.constants import COMMIT_BATCH_INTERVAL_MS, COMMIT_BATCH_MAX_BYTES


class FlushTrigger(str, Enum):
    SIZE = "size"
    TIME = "time"


@dataclass(frozen=True)
class FlushDecision:
    """
    Result of a flush evaluation.

    If flush is False, trigger is None.
    """
    flush: bool
    trigger: FlushTrigger | None = None
    pending_bytes: int = 0


def evaluate_flush(
    *,
    pending: str,
    elapsed_ms: int,
    max_bytes: int = COMMIT_BATCH_MAX_BYTES,
    interval_ms: int = COMMIT_BATCH_INTERVAL_MS,
) -> FlushDecision:
    """
    Decide whether streamed content should be committed now.

    Args:
        pending:
            Content received since the last commit.
        elapsed_ms:
            Time since pending went from empty to non-empty.

    Returns:
        FlushDecision; size is checked before time so the reported
        trigger is the one that forced the write.
    """
    if not pending:
        return FlushDecision(flush=False)

    # Bounded byte count, measured as stored (UTF-8)
    pending_bytes = len(pending.encode("utf-8"))
    if pending_bytes >= max_bytes:
        return FlushDecision(flush=True, trigger=FlushTrigger.SIZE, pending_bytes=pending_bytes)

    if elapsed_ms >= interval_ms:
        return FlushDecision(flush=True, trigger=FlushTrigger.TIME, pending_bytes=pending_bytes)

    return FlushDecision(flush=False, pending_bytes=pending_bytes)
