"""
Provider adapter contract.

Purpose:
- Define the capability interface every provider variant implements.
- Define the canonical request each adapter translates to its wire shape.
- Keep all orchestration, retries, timing and persistence OUT of adapters.

Rules:
- This file contains NO provider logic.
- Adapters never retry.
- Adapters never raise from send_streaming; failures become StreamError.
- No knowledge of storage, the event bus or the turn state machine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol, runtime_checkable

from echo_chat.adapters.llm.stream_events import StreamEvent
from echo_chat.models.account import Account, ProviderKind
from echo_chat.models.message import ImageAttachment, Role, TokenUsage


@dataclass(frozen=True)
class ChatTurn:
    role: Role
    content: str
    images: tuple[ImageAttachment, ...] = ()


@dataclass(frozen=True)
class ChatRequest:
    """
    Canonical, provider-agnostic representation of one chat turn.

    `history` is the ordered prior turns; `content` / `images` is the new
    user turn. The secret is excluded from repr so requests are safe to
    log.
    """

    account: Account
    content: str
    history: tuple[ChatTurn, ...] = ()
    images: tuple[ImageAttachment, ...] = ()
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    secret: str | None = field(default=None, repr=False)

    def turns(self) -> tuple[ChatTurn, ...]:
        """History followed by the new user turn."""
        return self.history + (ChatTurn(Role.USER, self.content, self.images),)


@dataclass(frozen=True)
class ChatReply:
    """Result of a non-streaming completion."""

    content: str
    model: str
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class ModelInfo:
    id: str
    display_name: str


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Capability interface, one implementation per ProviderKind.

    The adapter is a *dumb pipe*:
    canonical request -> vendor wire call -> canonical events.

    Orchestrator responsibilities (NOT here):
    - When to start and when to close the stream
    - Timeouts and retry policy
    - History construction
    - What to do with deltas
    """

    kind: ProviderKind

    def send_streaming(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Open a streaming completion.

        Contract:
        - Returns a lazy async iterator; nothing happens until iterated.
        - Yields zero or more Delta / Usage events in transport order.
        - Yields exactly ONE terminal event, Done or StreamError, then stops.
        - Never raises for provider or transport failures.
        - Closing the iterator (aclose() or task cancellation) closes the
          underlying connection; no further events are produced.
        - Not restartable: every call opens a fresh connection.
        """
        ...

    async def send_once(self, request: ChatRequest) -> ChatReply:
        """
        Non-streaming completion.

        Raises ChatError subclasses (NetworkError, ProviderRejected,
        ProviderTimeout) on failure.
        """
        ...

    async def list_models(
        self,
        *,
        secret: str | None,
        endpoint_url: str | None = None,
    ) -> list[ModelInfo]:
        """List models visible to the credential. Doubles as credential validation."""
        ...

    async def check_endpoint(self, *, endpoint_url: str | None, secret: str | None) -> None:
        """
        Lightweight readiness check before first use.

        Cloud adapters assume capability per provider kind and do nothing.
        Raises NetworkError / ProviderRejected when the endpoint is not usable.
        """
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...
