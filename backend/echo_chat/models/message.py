"""Message: one turn of a conversation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    COMPLETE = "complete"
    STREAMING = "streaming"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.STREAMING


@dataclass(frozen=True)
class ImageAttachment:
    """Raw image bytes passed through to providers unchanged."""

    mime_type: str
    data: bytes = field(repr=False)
    filename: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class TokenUsage:
    """Provider-reported token counts; either side may be unknown."""

    input_tokens: int | None = None
    output_tokens: int | None = None

    def merge(self, other: TokenUsage) -> TokenUsage:
        """Later reports win per field; missing fields keep earlier values."""
        return TokenUsage(
            input_tokens=other.input_tokens if other.input_tokens is not None else self.input_tokens,
            output_tokens=other.output_tokens if other.output_tokens is not None else self.output_tokens,
        )


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    status: MessageStatus
    created_at: datetime
    sequence: int = 0
    attachments: tuple[ImageAttachment, ...] = ()
    usage: TokenUsage | None = None
    model: str | None = None
    error_kind: str | None = None
    error_reason: str | None = None
    error_detail: str | None = None
