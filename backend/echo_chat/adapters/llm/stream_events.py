"""
Canonical stream events produced by provider adapters.

A stream is a finite, non-restartable sequence of these values ending
with exactly one terminal event: Done or StreamError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from echo_chat.errors import ErrorKind, RejectionReason
from echo_chat.models.message import TokenUsage


@dataclass(frozen=True)
class Delta:
    """Incremental text fragment; concatenate in order, no separator."""

    text: str


@dataclass(frozen=True)
class Usage:
    usage: TokenUsage


@dataclass(frozen=True)
class StreamError:
    kind: ErrorKind
    detail: str = ""
    reason: RejectionReason | None = None


@dataclass(frozen=True)
class Done:
    pass


StreamEvent = Union[Delta, Usage, StreamError, Done]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Done, StreamError))
