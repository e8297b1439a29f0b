"""
Storage retry policy helpers.

Purpose:
- Centralize the bounded retry rules for durable commits
- Keep the runtime's retry loop deterministic

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from echo_chat.constants import STORAGE_RETRY_DELAYS_MS


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    Semantics:
    - attempt == 0 represents the initial attempt (no retry yet).
    - attempt >= 1 represents the Nth retry attempt.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def max_attempts(*, best_effort: bool = False) -> int:
    """
    Maximum retries (excluding the initial attempt).

    - Streaming and terminal commits: one retry per configured delay
    - Best-effort writes (already failing for storage reasons): none
    """
    if best_effort:
        return 0
    return len(STORAGE_RETRY_DELAYS_MS)


def should_retry(*, attempt: RetryAttempt, best_effort: bool = False) -> bool:
    """
    Returns True if another write attempt is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < max_attempts(best_effort=best_effort)


# =============================================================================
# Delay Calculation
# =============================================================================

def get_retry_delay_ms(attempt: RetryAttempt) -> int:
    """
    Delay before the retry that follows `attempt`.

    Increasing backoff; clamps to the last configured slot.
    """
    idx = min(attempt.attempt, len(STORAGE_RETRY_DELAYS_MS) - 1)
    return STORAGE_RETRY_DELAYS_MS[idx]
