"""Conversation: an ordered thread of messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Conversation:
    """
    A Conversation always has an account reference or is archived.
    `updated_at` strictly increases with each appended message.
    """

    id: str
    title: str
    account_id: str | None
    created_at: datetime
    updated_at: datetime
    pinned: bool = False
    archived: bool = False
    system_prompt: str | None = None
