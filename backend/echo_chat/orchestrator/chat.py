"""
Chat orchestrator: the entry point for send / edit / cancel / regenerate.

Responsibilities:
- Enforce one active turn per conversation (synchronous reservation)
- Validate a request completely before any network call or row write
- Create the rows a turn writes into and start its TurnRuntime
- Route cancellation to the active turn, or hold it until the turn exists

Non-responsibilities:
- Turn transitions (reducer)
- Command execution, timers, streaming (TurnRuntime)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Iterable

from echo_chat.adapters.llm.base import ChatRequest
from echo_chat.adapters.llm.registry import ProviderAdapterHandle, ProviderRegistry
from echo_chat.constants import DEFAULT_CONVERSATION_TITLE
from echo_chat.context.history import build_history, resolve_system_prompt
from echo_chat.context.titles import truncate_title
from echo_chat.errors import (
    InvalidRequest,
    TurnInProgress,
    UnknownMessage,
    UnsupportedAttachment,
)
from echo_chat.models.conversation import Conversation
from echo_chat.models.ids import new_id, utc_now
from echo_chat.models.message import ImageAttachment, Message, MessageStatus, Role
from echo_chat.notifications.bus import EventBus
from echo_chat.notifications.events import ConversationUpdated, MessageStarted
from echo_chat.observability.logger import log_event
from echo_chat.orchestrator.enums.turn_kind import TurnKind
from echo_chat.orchestrator.runtime import TurnRuntime
from echo_chat.orchestrator.runtime_context import TurnContext
from echo_chat.orchestrator.state_dataclass import TurnPolicy, TurnSnapshot
from echo_chat.services.settings import ChatSettings, SettingsService
from echo_chat.storage.conversation_store import ConversationStore

# Upper bound for turns to reach a terminal state during shutdown
_SHUTDOWN_GRACE_S = 5.0


def _now_ms() -> int:
    return time.monotonic_ns() // 1_000_000


@dataclass
class TurnHandle:
    """Caller's view of a started turn."""

    conversation_id: str
    message_id: str
    run_id: int
    kind: TurnKind
    _runtime: TurnRuntime = field(repr=False)
    _store: ConversationStore = field(repr=False)
    user_message_id: str | None = None

    @property
    def state(self) -> TurnSnapshot:
        return self._runtime.state

    async def wait(self) -> Message:
        """Wait for the terminal state; returns the stored message."""
        await self._runtime.wait()
        return await self._store.get_message(self.message_id)


@dataclass(frozen=True)
class _PreparedTurn:
    conversation: Conversation
    handle: ProviderAdapterHandle
    settings: ChatSettings
    messages: tuple[Message, ...]


class ChatOrchestrator:
    """
    Per-conversation turn coordinator.

    Concurrent conversations are independent: each active turn owns its
    own runtime task, timers and stream.
    """

    def __init__(
        self,
        *,
        store: ConversationStore,
        registry: ProviderRegistry,
        bus: EventBus,
        settings: SettingsService | None = None,
        policy: TurnPolicy | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._settings = settings or SettingsService(store)
        self._policy = policy or TurnPolicy()

        # conversation_id -> runtime; None while a request is being validated
        self._active: dict[str, TurnRuntime | None] = {}
        # Set when the request that reserved the conversation stops dispatching
        self._dispatching: dict[str, asyncio.Event] = {}
        # Cancels that arrived while the turn was still dispatching
        self._cancel_requested: set[str] = set()
        self._run_ids: dict[str, int] = {}
        self._closing = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        content: str,
        images: Iterable[ImageAttachment] = (),
    ) -> TurnHandle:
        """
        Append a user message and stream the assistant reply.

        Raises (before any network call and before any row is written):
            TurnInProgress, UnknownConversation, InvalidRequest,
            UnknownProviderKind, MissingCredential, UnsupportedAttachment
        """
        images = tuple(images)
        self._reserve(conversation_id)
        started = False
        try:
            if not content.strip() and not images:
                raise InvalidRequest("message content is empty")

            prepared = await self._prepare(conversation_id, images)

            request = prepared.handle.build_request(
                content=content,
                images=images,
                history=build_history(prepared.messages),
                system_prompt=resolve_system_prompt(
                    prepared.conversation,
                    prepared.messages,
                    default=prepared.settings.default_system_prompt,
                ),
                temperature=prepared.settings.request_temperature,
                max_tokens=prepared.settings.max_tokens,
            )

            user_message = Message(
                id=new_id("msg"),
                conversation_id=conversation_id,
                role=Role.USER,
                content=content,
                status=MessageStatus.COMPLETE,
                created_at=utc_now(),
                attachments=images,
            )
            await self._store.append_message(conversation_id, user_message)

            is_first_user_message = not any(m.role is Role.USER for m in prepared.messages)
            if is_first_user_message and prepared.conversation.title == DEFAULT_CONVERSATION_TITLE:
                title = truncate_title(content)
                if title:
                    await self._store.rename_conversation(conversation_id, title)

            assistant_id = await self._append_assistant(prepared)

            handle = self._start_turn(
                prepared,
                message_id=assistant_id,
                kind=TurnKind.SEND,
                request=request,
                user_message_id=user_message.id,
            )
            started = True
            await self._apply_held_cancel(conversation_id)
            return handle
        finally:
            self._end_dispatch(conversation_id, started=started)

    async def edit_and_resend(self, conversation_id: str, message_id: str, content: str) -> TurnHandle:
        """
        Rewrite an earlier user message and answer it again.

        Every message after the edited one is deactivated: kept in the
        database, dropped from the conversation and from provider history.
        The reply streams into a new assistant message. Attachments of the
        edited message are sent again.
        """
        self._reserve(conversation_id)
        started = False
        try:
            messages = await self._store.load_conversation(conversation_id)
            index = next((i for i, m in enumerate(messages) if m.id == message_id), None)
            if index is None:
                raise UnknownMessage(message_id)
            target = messages[index]
            if target.role is not Role.USER:
                raise InvalidRequest("only user messages can be edited")
            if not content.strip() and not target.attachments:
                raise InvalidRequest("message content is empty")

            prepared = await self._prepare(conversation_id, target.attachments)

            request = prepared.handle.build_request(
                content=content,
                images=target.attachments,
                history=build_history(messages[:index]),
                system_prompt=resolve_system_prompt(
                    prepared.conversation,
                    messages[:index],
                    default=prepared.settings.default_system_prompt,
                ),
                temperature=prepared.settings.request_temperature,
                max_tokens=prepared.settings.max_tokens,
            )

            deactivated = await self._store.edit_message(message_id, content)
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "MESSAGE_EDITED",
                "conversation_id": conversation_id,
                "message_id": message_id,
                "deactivated": deactivated,
            })
            assistant_id = await self._append_assistant(prepared)

            handle = self._start_turn(
                prepared,
                message_id=assistant_id,
                kind=TurnKind.EDIT,
                request=request,
                user_message_id=message_id,
            )
            started = True
            await self._apply_held_cancel(conversation_id)
            return handle
        finally:
            self._end_dispatch(conversation_id, started=started)

    async def regenerate(self, conversation_id: str, message_id: str) -> TurnHandle:
        """
        Re-run the turn that produced an assistant message, in place.

        The previous text stays stored until the first delta of the new
        attempt replaces it. No row is added.
        """
        self._reserve(conversation_id)
        started = False
        try:
            messages = await self._store.load_conversation(conversation_id)
            index = next((i for i, m in enumerate(messages) if m.id == message_id), None)
            if index is None:
                raise UnknownMessage(message_id)
            target = messages[index]
            if target.role is not Role.ASSISTANT:
                raise InvalidRequest("only assistant messages can be regenerated")

            user_index = _preceding_user_index(messages, index)
            if user_index is None:
                raise InvalidRequest("assistant message has no preceding user message")
            user_message = messages[user_index]

            prepared = await self._prepare(conversation_id, user_message.attachments)

            request = prepared.handle.build_request(
                content=user_message.content,
                images=user_message.attachments,
                history=build_history(messages[:user_index]),
                system_prompt=resolve_system_prompt(
                    prepared.conversation,
                    messages,
                    default=prepared.settings.default_system_prompt,
                ),
                temperature=prepared.settings.request_temperature,
                max_tokens=prepared.settings.max_tokens,
            )

            # Old content stays visible; only status, model and error change
            await self._store.update_message_content(
                target.id,
                target.content,
                MessageStatus.STREAMING,
                model=prepared.handle.account.model,
            )

            handle = self._start_turn(
                prepared,
                message_id=target.id,
                kind=TurnKind.REGENERATE,
                request=request,
            )
            started = True
            await self._apply_held_cancel(conversation_id)
            return handle
        finally:
            self._end_dispatch(conversation_id, started=started)

    async def cancel(self, conversation_id: str, *, wait: bool = False) -> None:
        """
        Idempotent: no-op when the conversation has no turn.

        A cancel that arrives while a turn is still dispatching is held and
        applied as soon as the turn starts, before its stream is read; if
        the request fails validation instead, there is nothing to cancel.

        With `wait`, returns only after the cancelled content is committed.
        """
        settled = self._dispatching.get(conversation_id)
        if settled is not None:
            self._cancel_requested.add(conversation_id)
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CANCEL_HELD",
                "conversation_id": conversation_id,
            })
            if not wait:
                return
            await settled.wait()

        runtime = self._active.get(conversation_id)
        if settled is not None:
            if wait and runtime is not None:
                await runtime.wait()
            return
        if runtime is None or runtime.done:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CANCEL_NOOP",
                "conversation_id": conversation_id,
            })
            return
        await runtime.cancel()
        if wait:
            await runtime.wait()

    def active_turn(self, conversation_id: str) -> TurnSnapshot | None:
        runtime = self._active.get(conversation_id)
        return runtime.state if runtime is not None else None

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    async def shutdown(self) -> None:
        """
        Cancel every active turn and wait (bounded) for terminal commits.

        New requests are rejected from the moment shutdown starts.
        """
        self._closing = True
        # Turns still dispatching are cancelled the moment they start
        self._cancel_requested.update(self._dispatching)
        runtimes = [r for r in self._active.values() if r is not None]
        for runtime in runtimes:
            await runtime.cancel()
        if runtimes:
            waits = [asyncio.ensure_future(r.wait()) for r in runtimes]
            _, pending = await asyncio.wait(waits, timeout=_SHUTDOWN_GRACE_S)
            for fut in pending:
                fut.cancel()
            for fut in waits:
                if fut.done() and not fut.cancelled() and fut.exception() is not None:
                    log_event({
                        "ts_ms": _now_ms(),
                        "event_type": "TURN_SHUTDOWN_ERROR",
                        "error": repr(fut.exception()),
                    })
        for runtime in runtimes:
            await runtime.shutdown()
        self._active.clear()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _reserve(self, conversation_id: str) -> None:
        # No await before this point: check-and-set is atomic on the loop
        if self._closing:
            raise InvalidRequest("chat core is shutting down")
        if conversation_id in self._active:
            raise TurnInProgress(conversation_id)
        self._active[conversation_id] = None
        self._dispatching[conversation_id] = asyncio.Event()

    def _release(self, conversation_id: str) -> None:
        self._active.pop(conversation_id, None)

    def _end_dispatch(self, conversation_id: str, *, started: bool) -> None:
        self._cancel_requested.discard(conversation_id)
        settled = self._dispatching.pop(conversation_id, None)
        if settled is not None:
            settled.set()
        if not started:
            self._release(conversation_id)

    async def _apply_held_cancel(self, conversation_id: str) -> None:
        if conversation_id not in self._cancel_requested:
            return
        runtime = self._active.get(conversation_id)
        if runtime is None:
            return
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CANCEL_APPLIED",
            "conversation_id": conversation_id,
            "message_id": runtime.state.message_id,
        })
        await runtime.cancel()

    async def _append_assistant(self, prepared: _PreparedTurn) -> str:
        """Empty `streaming` row the turn writes into."""
        assistant = Message(
            id=new_id("msg"),
            conversation_id=prepared.conversation.id,
            role=Role.ASSISTANT,
            content="",
            status=MessageStatus.STREAMING,
            created_at=utc_now(),
            model=prepared.handle.account.model,
        )
        return await self._store.append_message(prepared.conversation.id, assistant)

    def _on_turn_finished(self, conversation_id: str, status: MessageStatus) -> None:
        self._release(conversation_id)
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "TURN_RELEASED",
            "conversation_id": conversation_id,
            "status": status.value,
        })

    async def _prepare(
        self,
        conversation_id: str,
        images: tuple[ImageAttachment, ...],
    ) -> _PreparedTurn:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation.archived or conversation.account_id is None:
            raise InvalidRequest(f"conversation '{conversation_id}' is archived")

        account = await self._store.get_account(conversation.account_id)
        handle = await self._registry.resolve(account)
        if images and not handle.capability.supports_images:
            raise UnsupportedAttachment(
                f"{handle.kind.label} accounts do not accept image attachments"
            )

        settings = await self._settings.load()
        messages = await self._store.load_conversation(conversation_id)
        return _PreparedTurn(
            conversation=conversation,
            handle=handle,
            settings=settings,
            messages=tuple(messages),
        )

    def _start_turn(
        self,
        prepared: _PreparedTurn,
        *,
        message_id: str,
        kind: TurnKind,
        request: ChatRequest,
        user_message_id: str | None = None,
    ) -> TurnHandle:
        conversation_id = prepared.conversation.id
        run_id = self._run_ids.get(conversation_id, 0) + 1
        self._run_ids[conversation_id] = run_id

        snapshot = TurnSnapshot(
            conversation_id=conversation_id,
            message_id=message_id,
            account_id=prepared.handle.account.id,
            run_id=run_id,
            kind=kind,
            policy=self._policy,
        )
        runtime = TurnRuntime(
            snapshot=snapshot,
            context=TurnContext(
                writer=self._store,
                bus=self._bus,
                handle=prepared.handle,
                request=request,
                stream_responses=prepared.settings.stream_responses,
                on_finished=self._on_turn_finished,
            ),
        )
        self._active[conversation_id] = runtime

        self._bus.publish(MessageStarted(
            conversation_id=conversation_id,
            message_id=message_id,
            regenerating=kind is TurnKind.REGENERATE,
        ))
        self._bus.publish(ConversationUpdated(conversation_id=conversation_id))

        runtime.start()
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "TURN_STARTED",
            "conversation_id": conversation_id,
            "message_id": message_id,
            "run_id": run_id,
            "turn_kind": kind.value,
            "provider": prepared.handle.kind.value,
            "model": prepared.handle.account.model,
            "history_len": len(request.history),
            "streaming": prepared.settings.stream_responses,
        })

        return TurnHandle(
            conversation_id=conversation_id,
            message_id=message_id,
            run_id=run_id,
            kind=kind,
            user_message_id=user_message_id,
            _runtime=runtime,
            _store=self._store,
        )


def _preceding_user_index(messages: list[Message], index: int) -> int | None:
    """Index of the user message that prompted messages[index], skipping system rows."""
    for i in range(index - 1, -1, -1):
        role = messages[i].role
        if role is Role.SYSTEM:
            continue
        return i if role is Role.USER else None
    return None
