"""
Turn execution context.

Gives TurnRuntime access to the imperative resources it needs to execute
commands (storage, provider handle, notification bus).

This module contains:
- Narrow Protocols (capabilities, not implementations)
- Zero orchestration logic
- Zero state mutation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol

from echo_chat.adapters.llm.base import ChatRequest
from echo_chat.adapters.llm.registry import ProviderAdapterHandle
from echo_chat.models.message import MessageStatus, TokenUsage
from echo_chat.notifications.events import Notification


# ---------------------------------------------------------------------
# Capability Protocols
# ---------------------------------------------------------------------

class MessageWriter(Protocol):
    async def update_message_content(
        self,
        message_id: str,
        content: str,
        status: MessageStatus,
        *,
        usage: TokenUsage | None = None,
        model: str | None = None,
        error_kind: str | None = None,
        error_reason: str | None = None,
        error_detail: str | None = None,
    ) -> None: ...

    async def add_account_usage(self, account_id: str, usage: TokenUsage) -> None: ...


class NotificationSink(Protocol):
    def publish(self, notification: Notification) -> None: ...


FinishedCallback = Callable[[str, MessageStatus], None]


# ---------------------------------------------------------------------
# Turn Execution Context
# ---------------------------------------------------------------------

@dataclass
class TurnContext:
    """
    Everything one turn needs besides its snapshot.

    TurnRuntime is allowed to:
    - Call the provider handle
    - Write the assistant message and account usage
    - Publish notifications

    TurnRuntime is NOT allowed to:
    - Touch other conversations
    - Perform orchestration decisions
    """

    writer: MessageWriter
    bus: NotificationSink
    handle: ProviderAdapterHandle
    request: ChatRequest = field(repr=False)
    stream_responses: bool = True
    on_finished: FinishedCallback | None = None

    @property
    def model(self) -> str:
        return self.handle.account.model
