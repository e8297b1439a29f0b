"""
Route registration for the chat API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Translate request bodies into core calls
- Pull the ChatCore from app.state
"""

from __future__ import annotations

import asyncio

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from echo_chat.core import ChatCore
from echo_chat.errors import ChatError, ErrorKind, InvalidRequest, NotFound
from echo_chat.notifications.events import to_payload
from echo_chat.observability.logger import log_event
from echo_chat.orchestrator.chat import TurnHandle
from echo_chat.server.schemas import (
    AccountCreate,
    AccountOut,
    AccountUpdate,
    ConversationCreate,
    ConversationOut,
    ConversationUpdate,
    EditRequest,
    MessageOut,
    ModelOut,
    RegenerateRequest,
    SendRequest,
    SettingsBody,
    TurnOut,
)
from echo_chat.services.export import export_to_markdown

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.TURN_IN_PROGRESS: 409,
    ErrorKind.UNKNOWN_PROVIDER_KIND: 400,
    ErrorKind.MISSING_CREDENTIAL: 400,
    ErrorKind.UNSUPPORTED_ATTACHMENT: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.NETWORK: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.STORAGE_FAILURE: 503,
}


def http_status_for(error: ChatError) -> int:
    if isinstance(error, NotFound):
        return 404
    return _STATUS_BY_KIND.get(error.kind, 400)


def error_body(error: ChatError) -> dict:
    return {
        "error": {
            "kind": error.kind.value,
            "reason": error.reason.value if error.reason is not None else None,
            "detail": error.detail,
            "message": error.describe(),
        }
    }


def _core(request: Request) -> ChatCore:
    return request.app.state.core


async def _turn_out(handle: TurnHandle, *, wait: bool) -> TurnOut:
    message = MessageOut.from_model(await handle.wait()) if wait else None
    return TurnOut(
        conversation_id=handle.conversation_id,
        message_id=handle.message_id,
        user_message_id=handle.user_message_id,
        run_id=handle.run_id,
        kind=handle.kind.value,
        message=message,
    )


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        log_event({
            "event_type": "HTTP_CHAT_ERROR",
            "path": request.url.path,
            "kind": exc.kind.value,
            "detail": exc.detail,
        })
        return JSONResponse(status_code=http_status_for(exc), content=error_body(exc))

    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @app.get("/accounts")
    async def list_accounts(request: Request) -> list[AccountOut]:  # pyright: ignore[reportUnusedFunction]
        accounts = await _core(request).store.list_accounts()
        return [AccountOut.from_model(a) for a in accounts]

    @app.post("/accounts", status_code=201)
    async def create_account(request: Request, body: AccountCreate) -> AccountOut:  # pyright: ignore[reportUnusedFunction]
        account = await _core(request).accounts.add_account(
            provider=body.provider,
            display_name=body.display_name,
            model=body.model,
            secret=body.api_key,
            endpoint_url=body.endpoint_url,
            validate=body.validate_credentials,
        )
        return AccountOut.from_model(account)

    @app.patch("/accounts/{account_id}")
    async def update_account(request: Request, account_id: str, body: AccountUpdate) -> AccountOut:  # pyright: ignore[reportUnusedFunction]
        core = _core(request)
        if body.api_key is not None:
            await core.accounts.update_credentials(account_id, body.api_key)
        account = await core.store.update_account(
            account_id,
            display_name=body.display_name,
            model=body.model,
        )
        return AccountOut.from_model(account)

    @app.delete("/accounts/{account_id}")
    async def delete_account(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        account_id: str,
        reassign_to: str | None = None,
    ) -> dict[str, int]:
        affected = await _core(request).accounts.delete_account(account_id, reassign_to=reassign_to)
        return {"conversations_affected": affected}

    @app.get("/accounts/{account_id}/models")
    async def list_models(request: Request, account_id: str) -> list[ModelOut]:  # pyright: ignore[reportUnusedFunction]
        models = await _core(request).accounts.list_models(account_id)
        return [ModelOut(id=m.id, display_name=m.display_name) for m in models]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @app.get("/conversations")
    async def list_conversations(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        include_archived: bool = False,
    ) -> list[ConversationOut]:
        conversations = await _core(request).store.list_conversations(include_archived=include_archived)
        return [ConversationOut.from_model(c) for c in conversations]

    @app.post("/conversations", status_code=201)
    async def create_conversation(request: Request, body: ConversationCreate) -> ConversationOut:  # pyright: ignore[reportUnusedFunction]
        core = _core(request)
        conversation = await core.store.create_conversation(
            account_id=body.account_id,
            title=body.title,
            system_prompt=body.system_prompt,
        )
        return ConversationOut.from_model(conversation)

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(request: Request, conversation_id: str) -> ConversationOut:  # pyright: ignore[reportUnusedFunction]
        return ConversationOut.from_model(await _core(request).store.get_conversation(conversation_id))

    @app.patch("/conversations/{conversation_id}")
    async def update_conversation(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        conversation_id: str,
        body: ConversationUpdate,
    ) -> ConversationOut:
        store = _core(request).store
        fields = body.model_fields_set
        conversation = await store.get_conversation(conversation_id)
        if "title" in fields:
            if not (body.title or "").strip():
                raise InvalidRequest("title is empty")
            conversation = await store.rename_conversation(conversation_id, body.title.strip())
        if "pinned" in fields and body.pinned is not None:
            conversation = await store.set_pinned(conversation_id, body.pinned)
        if "system_prompt" in fields:
            conversation = await store.set_system_prompt(conversation_id, body.system_prompt)
        if "account_id" in fields and body.account_id is not None:
            conversation = await store.reassign_conversation(conversation_id, body.account_id)
        if "archived" in fields and body.archived:
            conversation = await store.archive_conversation(conversation_id)
        return ConversationOut.from_model(conversation)

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(request: Request, conversation_id: str) -> Response:  # pyright: ignore[reportUnusedFunction]
        core = _core(request)
        await core.orchestrator.cancel(conversation_id, wait=True)
        await core.store.delete_conversation(conversation_id)
        return Response(status_code=204)

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(request: Request, conversation_id: str) -> list[MessageOut]:  # pyright: ignore[reportUnusedFunction]
        messages = await _core(request).store.load_conversation(conversation_id)
        return [MessageOut.from_model(m) for m in messages]

    @app.get("/conversations/{conversation_id}/export", response_class=PlainTextResponse)
    async def export_conversation(request: Request, conversation_id: str) -> PlainTextResponse:  # pyright: ignore[reportUnusedFunction]
        store = _core(request).store
        conversation = await store.get_conversation(conversation_id)
        messages = await store.load_conversation(conversation_id)
        account = None
        if conversation.account_id is not None:
            account = await store.get_account(conversation.account_id)
        return PlainTextResponse(
            export_to_markdown(conversation, messages, account),
            media_type="text/markdown",
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    @app.post("/conversations/{conversation_id}/messages", status_code=202)
    async def send_message(request: Request, conversation_id: str, body: SendRequest) -> TurnOut:  # pyright: ignore[reportUnusedFunction]
        images = [image.to_attachment() for image in body.images]
        handle = await _core(request).orchestrator.send(conversation_id, body.content, images)
        return await _turn_out(handle, wait=body.wait)

    @app.post("/conversations/{conversation_id}/cancel", status_code=202)
    async def cancel_turn(request: Request, conversation_id: str) -> dict[str, bool]:  # pyright: ignore[reportUnusedFunction]
        orchestrator = _core(request).orchestrator
        was_active = orchestrator.is_active(conversation_id)
        await orchestrator.cancel(conversation_id)
        return {"cancelled": was_active}

    @app.post("/conversations/{conversation_id}/messages/{message_id}/regenerate", status_code=202)
    async def regenerate_message(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        conversation_id: str,
        message_id: str,
        body: RegenerateRequest | None = None,
    ) -> TurnOut:
        handle = await _core(request).orchestrator.regenerate(conversation_id, message_id)
        return await _turn_out(handle, wait=body.wait if body is not None else False)

    @app.post("/conversations/{conversation_id}/messages/{message_id}/edit", status_code=202)
    async def edit_message(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        conversation_id: str,
        message_id: str,
        body: EditRequest,
    ) -> TurnOut:
        handle = await _core(request).orchestrator.edit_and_resend(conversation_id, message_id, body.content)
        return await _turn_out(handle, wait=body.wait)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @app.get("/settings")
    async def get_settings(request: Request) -> SettingsBody:  # pyright: ignore[reportUnusedFunction]
        return SettingsBody.from_settings(await _core(request).settings.load())

    @app.put("/settings")
    async def put_settings(request: Request, body: SettingsBody) -> SettingsBody:  # pyright: ignore[reportUnusedFunction]
        saved = await _core(request).settings.save(body.to_settings())
        return SettingsBody.from_settings(saved)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @app.websocket("/ws/events")
    async def events_endpoint(ws: WebSocket, conversation_id: str | None = None) -> None:  # pyright: ignore[reportUnusedFunction]
        """
        Stream bus notifications as JSON text frames.

        One subscription per connection; optionally filtered to one
        conversation. Client frames are ignored.
        """
        await ws.accept()
        core: ChatCore = ws.app.state.core
        subscription = core.bus.subscribe(conversation_id)

        async def _forward() -> None:
            async for notification in subscription:
                await ws.send_json(to_payload(notification))

        sender = asyncio.create_task(_forward())
        try:
            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "conversation_id": conversation_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
        finally:
            subscription.close()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
