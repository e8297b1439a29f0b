"""
Provider history assembly.

Responsibilities:
- Turn stored Messages into the ordered ChatTurn history of a request
- Resolve the effective system prompt for a conversation

Non-responsibilities:
- No storage access
- No provider formatting (adapters own their wire shapes)
- No orchestration decisions
"""

from __future__ import annotations

from typing import Iterable

from echo_chat.adapters.llm.base import ChatTurn
from echo_chat.models.conversation import Conversation
from echo_chat.models.message import Message, MessageStatus, Role


def build_history(messages: Iterable[Message]) -> tuple[ChatTurn, ...]:
    """
    Ordered user/assistant turns for a provider request.

    Rules:
    - Messages still streaming are never sent back to a provider
    - Assistant messages without content (cancelled or failed before
      any delta) are dropped; partial content of cancelled / failed
      replies is kept
    - System-role messages are not turns; see resolve_system_prompt
    - User images travel with their turn
    """
    turns: list[ChatTurn] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            continue
        if message.status is MessageStatus.STREAMING:
            continue
        if message.role is Role.ASSISTANT and not message.content:
            continue
        images = message.attachments if message.role is Role.USER else ()
        turns.append(ChatTurn(role=message.role, content=message.content, images=images))
    return tuple(turns)


def resolve_system_prompt(
    conversation: Conversation,
    messages: Iterable[Message] = (),
    *,
    default: str | None = None,
) -> str | None:
    """
    Effective system prompt.

    The conversation's own prompt wins over the settings default; stored
    system-role messages are appended after it, in order.
    """
    parts: list[str] = []
    base = conversation.system_prompt or default
    if base and base.strip():
        parts.append(base.strip())
    parts.extend(m.content.strip() for m in messages if m.role is Role.SYSTEM and m.content.strip())
    return "\n\n".join(parts) or None
