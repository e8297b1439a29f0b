"""
Markdown export of a conversation.

Read-only and deterministic: the same conversation and messages always
produce the same text.
"""

from __future__ import annotations

from typing import Sequence

from echo_chat.errors import describe_failure
from echo_chat.models.account import Account
from echo_chat.models.conversation import Conversation
from echo_chat.models.message import Message, MessageStatus, Role

_DATE_FORMAT = "%Y-%m-%d %H:%M"


def _role_label(message: Message) -> str:
    if message.role is Role.USER:
        return "You"
    if message.role is Role.SYSTEM:
        return "System"
    return message.model or "Assistant"


def _status_note(message: Message) -> str | None:
    if message.status is MessageStatus.CANCELLED:
        return "_(cancelled)_"
    if message.status is MessageStatus.FAILED:
        cause = message.error_detail
        if not cause and message.error_kind:
            cause = describe_failure(message.error_kind, message.error_reason)
        return f"_(failed: {cause})_" if cause else "_(failed)_"
    if message.status is MessageStatus.STREAMING:
        return "_(incomplete)_"
    return None


def export_to_markdown(
    conversation: Conversation,
    messages: Sequence[Message],
    account: Account | None = None,
) -> str:
    model = account.model if account is not None else "unknown"
    out = [f"# {conversation.title}\n\n"]
    out.append(f"> Model: {model} | Date: {conversation.created_at.strftime(_DATE_FORMAT)}\n\n")
    if conversation.system_prompt:
        out.append(f"> System Prompt: {conversation.system_prompt}\n\n")
    out.append("---\n\n")

    for message in messages:
        out.append(f"### {_role_label(message)}\n\n")
        if message.attachments:
            names = ", ".join(
                a.filename or f"image {i + 1} ({a.mime_type})"
                for i, a in enumerate(message.attachments)
            )
            out.append(f"_Attachments: {names}_\n\n")
        out.append(f"{message.content}\n\n")
        note = _status_note(message)
        if note:
            out.append(f"{note}\n\n")

    return "".join(out)
