"""
Durable, transactional storage of accounts, conversations and messages.

Single source of truth for history. Every public method is one
transaction, so readers only ever observe whole rows: a streaming commit
is a single UPDATE of the message row and can never be seen half-written.

SQLite admits one writer at a time; operations are serialized on one
asyncio lock, which also keeps the shared in-memory connection used in
tests free of interleaved transactions.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from echo_chat.constants import DEFAULT_CONVERSATION_TITLE
from echo_chat.errors import (
    ErrorKind,
    InvalidRequest,
    StorageFailure,
    UnknownAccount,
    UnknownConversation,
    UnknownMessage,
    describe_failure,
)
from echo_chat.models.account import Account
from echo_chat.models.conversation import Conversation
from echo_chat.models.ids import new_id, utc_now
from echo_chat.models.message import (
    ImageAttachment,
    Message,
    MessageStatus,
    Role,
    TokenUsage,
)
from echo_chat.storage.connection import build_sessionmaker, create_engine_for, init_schema
from echo_chat.storage.tables import (
    AccountRow,
    AttachmentRow,
    ConversationRow,
    MessageRow,
    SettingRow,
)

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


# -----------------------------------------------------------------------------
# Row -> model mapping
# -----------------------------------------------------------------------------

def _account(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        provider=row.provider,
        display_name=row.display_name,
        model=row.model,
        endpoint_url=row.endpoint_url,
        created_at=from_iso(row.created_at),
        total_input_tokens=row.total_input_tokens,
        total_output_tokens=row.total_output_tokens,
    )


def _conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id,
        title=row.title,
        account_id=row.account_id,
        system_prompt=row.system_prompt,
        pinned=row.pinned,
        archived=row.archived,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _message(row: MessageRow, attachments: Sequence[AttachmentRow] = ()) -> Message:
    usage = None
    if row.input_tokens is not None or row.output_tokens is not None:
        usage = TokenUsage(row.input_tokens, row.output_tokens)
    return Message(
        id=row.id,
        conversation_id=row.conversation_id,
        role=Role(row.role),
        content=row.content,
        status=MessageStatus(row.status),
        created_at=from_iso(row.created_at),
        sequence=row.sequence,
        attachments=tuple(
            ImageAttachment(mime_type=a.mime_type, data=a.data, filename=a.filename)
            for a in sorted(attachments, key=lambda a: a.position)
        ),
        usage=usage,
        model=row.model,
        error_kind=row.error_kind,
        error_reason=row.error_reason,
        error_detail=row.error_detail,
    )


class ConversationStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = build_sessionmaker(engine)
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, database_url: str) -> ConversationStore:
        return cls(create_engine_for(database_url))

    async def init(self) -> None:
        try:
            await init_schema(self._engine)
        except SQLAlchemyError as e:
            raise StorageFailure(f"could not initialize database: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One serialized transaction; SQLAlchemy errors surface as StorageFailure."""
        async with self._lock:
            try:
                async with self._sessions() as session:
                    async with session.begin():
                        yield session
            except SQLAlchemyError as e:
                raise StorageFailure(str(e.__cause__ or e)) from e

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_account(
        self,
        *,
        provider: str,
        display_name: str,
        model: str,
        endpoint_url: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        row = AccountRow(
            id=account_id or new_id("acct"),
            provider=provider,
            display_name=display_name,
            model=model,
            endpoint_url=endpoint_url,
            created_at=to_iso(utc_now()),
            total_input_tokens=0,
            total_output_tokens=0,
        )
        async with self._transaction() as session:
            session.add(row)
        return _account(row)

    async def get_account(self, account_id: str) -> Account:
        async with self._transaction() as session:
            row = await session.get(AccountRow, account_id)
            if row is None:
                raise UnknownAccount(account_id)
            return _account(row)

    async def list_accounts(self) -> list[Account]:
        async with self._transaction() as session:
            rows = await session.scalars(select(AccountRow).order_by(AccountRow.created_at))
            return [_account(r) for r in rows]

    async def update_account(
        self,
        account_id: str,
        *,
        display_name: str | None = None,
        model: str | None = None,
    ) -> Account:
        async with self._transaction() as session:
            row = await session.get(AccountRow, account_id)
            if row is None:
                raise UnknownAccount(account_id)
            if display_name is not None:
                row.display_name = display_name
            if model is not None:
                row.model = model
            return _account(row)

    async def delete_account(self, account_id: str, *, reassign_to: str | None = None) -> int:
        """
        Delete an account, never orphaning its conversations.

        With `reassign_to` the conversations move to that account;
        otherwise they are archived with the account reference cleared.

        Returns:
            number of conversations reassigned or archived
        """
        if reassign_to == account_id:
            raise InvalidRequest("cannot reassign conversations to the account being deleted")

        async with self._transaction() as session:
            if await session.get(AccountRow, account_id) is None:
                raise UnknownAccount(account_id)

            stmt = update(ConversationRow).where(ConversationRow.account_id == account_id)
            if reassign_to is not None:
                if await session.get(AccountRow, reassign_to) is None:
                    raise UnknownAccount(reassign_to)
                stmt = stmt.values(account_id=reassign_to)
            else:
                stmt = stmt.values(account_id=None, archived=True)
            result = await session.execute(stmt)

            await session.execute(delete(AccountRow).where(AccountRow.id == account_id))
            return result.rowcount or 0

    async def add_account_usage(self, account_id: str, usage: TokenUsage) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(AccountRow)
                .where(AccountRow.id == account_id)
                .values(
                    total_input_tokens=AccountRow.total_input_tokens + (usage.input_tokens or 0),
                    total_output_tokens=AccountRow.total_output_tokens + (usage.output_tokens or 0),
                )
            )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        *,
        account_id: str,
        title: str | None = None,
        system_prompt: str | None = None,
    ) -> Conversation:
        now = to_iso(utc_now())
        row = ConversationRow(
            id=new_id("conv"),
            title=title or DEFAULT_CONVERSATION_TITLE,
            account_id=account_id,
            system_prompt=system_prompt,
            pinned=False,
            archived=False,
            created_at=now,
            updated_at=now,
        )
        async with self._transaction() as session:
            if await session.get(AccountRow, account_id) is None:
                raise UnknownAccount(account_id)
            session.add(row)
        return _conversation(row)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        async with self._transaction() as session:
            row = await self._conversation_row(session, conversation_id)
            return _conversation(row)

    async def list_conversations(self, *, include_archived: bool = False) -> list[Conversation]:
        """Pinned first, then most recently updated."""
        stmt = select(ConversationRow).order_by(
            ConversationRow.pinned.desc(),
            ConversationRow.updated_at.desc(),
        )
        if not include_archived:
            stmt = stmt.where(ConversationRow.archived.is_(False))
        async with self._transaction() as session:
            return [_conversation(r) for r in await session.scalars(stmt)]

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        return await self._modify_conversation(conversation_id, title=title)

    async def set_pinned(self, conversation_id: str, pinned: bool) -> Conversation:
        return await self._modify_conversation(conversation_id, pinned=pinned)

    async def set_system_prompt(self, conversation_id: str, system_prompt: str | None) -> Conversation:
        return await self._modify_conversation(conversation_id, system_prompt=system_prompt or None)

    async def archive_conversation(self, conversation_id: str) -> Conversation:
        return await self._modify_conversation(conversation_id, archived=True)

    async def reassign_conversation(self, conversation_id: str, account_id: str) -> Conversation:
        """Point a conversation at another account; un-archives it."""
        async with self._transaction() as session:
            if await session.get(AccountRow, account_id) is None:
                raise UnknownAccount(account_id)
            row = await self._conversation_row(session, conversation_id)
            row.account_id = account_id
            row.archived = False
            row.updated_at = _next_timestamp(row.updated_at)
            return _conversation(row)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation; messages and attachments cascade."""
        async with self._transaction() as session:
            await self._conversation_row(session, conversation_id)
            await session.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, conversation_id: str, message: Message) -> str:
        """
        Atomically insert a message at the end of its conversation.

        Assigns the next sequence number, stores attachments and bumps the
        conversation's updated timestamp (strictly increasing).
        """
        message_id = message.id or new_id("msg")
        async with self._transaction() as session:
            conversation = await self._conversation_row(session, conversation_id)

            last = await session.scalar(
                select(func.max(MessageRow.sequence)).where(MessageRow.conversation_id == conversation_id)
            )
            usage = message.usage or TokenUsage()
            session.add(MessageRow(
                id=message_id,
                conversation_id=conversation_id,
                role=Role(message.role).value,
                content=message.content,
                status=MessageStatus(message.status).value,
                sequence=(last or 0) + 1,
                created_at=to_iso(message.created_at),
                model=message.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                error_kind=message.error_kind,
                error_reason=message.error_reason,
                error_detail=message.error_detail,
                active=True,
            ))
            # Parent row must exist before attachment rows reference it
            await session.flush()
            for position, image in enumerate(message.attachments):
                session.add(AttachmentRow(
                    message_id=message_id,
                    position=position,
                    mime_type=image.mime_type,
                    filename=image.filename,
                    data=image.data,
                ))
            conversation.updated_at = _next_timestamp(conversation.updated_at)
        return message_id

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
    ) -> None:
        """
        Replace content and status in one atomic UPDATE.

        Safe to call repeatedly with growing content while streaming and
        once more at the terminal state. Error columns are always written
        so a successful regeneration clears a previous failure.
        """
        values: dict[str, object] = {
            "content": content,
            "status": MessageStatus(status).value,
            "error_kind": error_kind,
            "error_reason": error_reason,
            "error_detail": error_detail,
        }
        if usage is not None:
            values["input_tokens"] = usage.input_tokens
            values["output_tokens"] = usage.output_tokens
        if model is not None:
            values["model"] = model

        async with self._transaction() as session:
            result = await session.execute(
                update(MessageRow).where(MessageRow.id == message_id).values(**values)
            )
            if not result.rowcount:
                raise UnknownMessage(message_id)

    async def get_message(self, message_id: str) -> Message:
        async with self._transaction() as session:
            row = await session.get(MessageRow, message_id)
            if row is None:
                raise UnknownMessage(message_id)
            attachments = await session.scalars(
                select(AttachmentRow).where(AttachmentRow.message_id == message_id)
            )
            return _message(row, list(attachments))

    async def edit_message(self, message_id: str, content: str) -> int:
        """
        Rewrite a message and deactivate every message after it.

        One transaction: readers see either the old thread or the edited
        one. Deactivated rows stay in the database but are no longer loaded.

        Returns:
            number of messages deactivated
        """
        async with self._transaction() as session:
            row = await session.get(MessageRow, message_id)
            if row is None or not row.active:
                raise UnknownMessage(message_id)
            row.content = content
            result = await session.execute(
                update(MessageRow)
                .where(
                    MessageRow.conversation_id == row.conversation_id,
                    MessageRow.sequence > row.sequence,
                    MessageRow.active.is_(True),
                )
                .values(active=False)
            )
            conversation = await self._conversation_row(session, row.conversation_id)
            conversation.updated_at = _next_timestamp(conversation.updated_at)
            return result.rowcount or 0

    async def load_conversation(self, conversation_id: str) -> list[Message]:
        """Active messages in creation order, attachments included. Pure read."""
        async with self._transaction() as session:
            await self._conversation_row(session, conversation_id)
            rows = list(await session.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .where(MessageRow.active.is_(True))
                .order_by(MessageRow.sequence)
            ))
            by_message: dict[str, list[AttachmentRow]] = {}
            if rows:
                attachments = await session.scalars(
                    select(AttachmentRow).where(AttachmentRow.message_id.in_([r.id for r in rows]))
                )
                for a in attachments:
                    by_message.setdefault(a.message_id, []).append(a)
            return [_message(r, by_message.get(r.id, ())) for r in rows]

    async def recover_interrupted(self) -> int:
        """
        Mark rows left `streaming` by a previous process as failed.

        Called once at startup, before any turn can be active. Content
        committed before the interruption is kept.
        """
        async with self._transaction() as session:
            result = await session.execute(
                update(MessageRow)
                .where(MessageRow.status == MessageStatus.STREAMING.value)
                .values(
                    status=MessageStatus.FAILED.value,
                    error_kind=ErrorKind.INTERRUPTED.value,
                    error_detail=describe_failure(
                        ErrorKind.INTERRUPTED,
                        detail="the app stopped before the response finished",
                    ),
                )
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        async with self._transaction() as session:
            row = await session.get(SettingRow, key)
            return row.value if row is not None else None

    async def set_setting(self, key: str, value: str) -> None:
        async with self._transaction() as session:
            row = await session.get(SettingRow, key)
            if row is None:
                session.add(SettingRow(key=key, value=value))
            else:
                row.value = value

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    async def _conversation_row(session: AsyncSession, conversation_id: str) -> ConversationRow:
        row = await session.get(ConversationRow, conversation_id)
        if row is None:
            raise UnknownConversation(conversation_id)
        return row

    async def _modify_conversation(self, conversation_id: str, **values: object) -> Conversation:
        async with self._transaction() as session:
            row = await self._conversation_row(session, conversation_id)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = _next_timestamp(row.updated_at)
            return _conversation(row)


def _next_timestamp(previous: str) -> str:
    """Now, or one microsecond after `previous` if the clock has not advanced."""
    now = utc_now()
    floor = from_iso(previous) + timedelta(microseconds=1)
    return to_iso(max(now, floor))
