# pylint: disable=missing-module-docstring,missing-function-docstring

from echo_chat.constants import STORAGE_RETRY_DELAYS_MS
from echo_chat.orchestrator.flush_policy import FlushTrigger, evaluate_flush
from echo_chat.orchestrator.retry import (
    RetryAttempt,
    get_retry_delay_ms,
    max_attempts,
    next_attempt,
    reset_attempt,
    should_retry,
)


# ---------------------------------------------------------------------
# Commit batching
# ---------------------------------------------------------------------

def test_nothing_pending_never_flushes():
    decision = evaluate_flush(pending="", elapsed_ms=10_000)
    assert decision.flush is False
    assert decision.trigger is None


def test_size_trigger_counts_utf8_bytes():
    # 3 bytes per CJK character, so 4 characters are 10 bytes
    decision = evaluate_flush(pending="日本語!", elapsed_ms=0, max_bytes=10, interval_ms=250)
    assert decision.flush is True
    assert decision.trigger is FlushTrigger.SIZE
    assert decision.pending_bytes == 10

    below = evaluate_flush(pending="abc", elapsed_ms=0, max_bytes=10, interval_ms=250)
    assert below.flush is False
    assert below.pending_bytes == 3


def test_time_trigger_fires_at_interval():
    assert evaluate_flush(pending="a", elapsed_ms=249, interval_ms=250).flush is False
    decision = evaluate_flush(pending="a", elapsed_ms=250, interval_ms=250)
    assert decision.flush is True
    assert decision.trigger is FlushTrigger.TIME


def test_size_wins_when_both_triggers_apply():
    decision = evaluate_flush(pending="x" * 600, elapsed_ms=1_000, max_bytes=512, interval_ms=250)
    assert decision.trigger is FlushTrigger.SIZE


# ---------------------------------------------------------------------
# Storage retry
# ---------------------------------------------------------------------

def test_retry_budget_matches_configured_delays():
    attempt = reset_attempt()
    retries = 0
    while should_retry(attempt=attempt):
        attempt = next_attempt(attempt)
        retries += 1
    assert retries == len(STORAGE_RETRY_DELAYS_MS) == max_attempts()


def test_best_effort_writes_are_never_retried():
    assert max_attempts(best_effort=True) == 0
    assert should_retry(attempt=reset_attempt(), best_effort=True) is False


def test_backoff_increases_and_clamps():
    delays = [get_retry_delay_ms(RetryAttempt(i)) for i in range(5)]
    assert delays[:3] == list(STORAGE_RETRY_DELAYS_MS)
    assert delays == sorted(delays)
    assert delays[-1] == STORAGE_RETRY_DELAYS_MS[-1]
