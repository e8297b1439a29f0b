"""
Typed notifications published by the chat core.

Notifications are immutable snapshots (strings and enums only), never
references into orchestrator buffers. They are idempotent view-refresh
triggers: delivering one twice is harmless.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Union

from echo_chat.models.message import MessageStatus


class NotificationType(str, Enum):
    MESSAGE_STARTED = "message_started"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_FINALIZED = "message_finalized"
    CONVERSATION_UPDATED = "conversation_updated"


@dataclass(frozen=True)
class MessageStarted:
    conversation_id: str
    message_id: str
    regenerating: bool = False

    notification_type = NotificationType.MESSAGE_STARTED


@dataclass(frozen=True)
class MessageDelta:
    conversation_id: str
    message_id: str
    text_appended: str
    # First delta of a regeneration: discard the previously shown text
    reset_content: bool = False

    notification_type = NotificationType.MESSAGE_DELTA


@dataclass(frozen=True)
class MessageFinalized:
    conversation_id: str
    message_id: str
    status: MessageStatus
    error_kind: str | None = None
    error_detail: str | None = None

    notification_type = NotificationType.MESSAGE_FINALIZED


@dataclass(frozen=True)
class ConversationUpdated:
    conversation_id: str

    notification_type = NotificationType.CONVERSATION_UPDATED


Notification = Union[MessageStarted, MessageDelta, MessageFinalized, ConversationUpdated]


def to_payload(notification: Notification) -> dict[str, Any]:
    """JSON-ready dict with a `type` discriminator."""
    payload: dict[str, Any] = {"type": notification.notification_type.value}
    for key, value in asdict(notification).items():
        payload[key] = value.value if isinstance(value, Enum) else value
    return payload
