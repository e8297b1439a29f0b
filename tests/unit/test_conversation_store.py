# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest
from sqlalchemy import text

from echo_chat.constants import DEFAULT_CONVERSATION_TITLE
from echo_chat.errors import (
    InvalidRequest,
    UnknownAccount,
    UnknownConversation,
    UnknownMessage,
)
from echo_chat.models.ids import new_id, utc_now
from echo_chat.models.message import ImageAttachment, Message, MessageStatus, Role, TokenUsage
from echo_chat.storage.conversation_store import ConversationStore


def message(conversation_id: str, role: Role, content: str, **kwargs) -> Message:
    return Message(
        id=new_id("msg"),
        conversation_id=conversation_id,
        role=role,
        content=content,
        status=kwargs.pop("status", MessageStatus.COMPLETE),
        created_at=utc_now(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_new_conversation_has_default_title_and_account(store, claude_account):
    conv = await store.create_conversation(account_id=claude_account.id)
    assert conv.title == DEFAULT_CONVERSATION_TITLE
    assert conv.account_id == claude_account.id
    assert not conv.archived


@pytest.mark.asyncio
async def test_conversation_requires_existing_account(store):
    with pytest.raises(UnknownAccount):
        await store.create_conversation(account_id="acct_missing")


@pytest.mark.asyncio
async def test_append_assigns_sequence_and_bumps_updated_at(store, conversation):
    first = await store.append_message(conversation.id, message(conversation.id, Role.USER, "one"))
    after_first = await store.get_conversation(conversation.id)
    second = await store.append_message(conversation.id, message(conversation.id, Role.ASSISTANT, "two"))
    after_second = await store.get_conversation(conversation.id)

    messages = await store.load_conversation(conversation.id)
    assert [m.id for m in messages] == [first, second]
    assert [m.sequence for m in messages] == [1, 2]
    assert conversation.updated_at < after_first.updated_at < after_second.updated_at


@pytest.mark.asyncio
async def test_attachments_round_trip_in_order(store, conversation):
    images = (
        ImageAttachment(mime_type="image/png", data=b"\x89PNG...", filename="a.png"),
        ImageAttachment(mime_type="image/jpeg", data=b"\xff\xd8\xff..."),
    )
    msg_id = await store.append_message(
        conversation.id, message(conversation.id, Role.USER, "look", attachments=images),
    )

    loaded = await store.get_message(msg_id)
    assert loaded.attachments == images


@pytest.mark.asyncio
async def test_update_message_content_is_atomic_replace(store, conversation):
    msg_id = await store.append_message(
        conversation.id, message(conversation.id, Role.ASSISTANT, "", status=MessageStatus.STREAMING),
    )

    await store.update_message_content(msg_id, "Hel", MessageStatus.STREAMING)
    await store.update_message_content(
        msg_id, "Hello!", MessageStatus.COMPLETE, usage=TokenUsage(3, 2), model="claude-test",
    )

    loaded = await store.get_message(msg_id)
    assert loaded.content == "Hello!"
    assert loaded.status is MessageStatus.COMPLETE
    assert loaded.usage == TokenUsage(3, 2)
    assert loaded.model == "claude-test"


@pytest.mark.asyncio
async def test_successful_update_clears_previous_error(store, conversation):
    msg_id = await store.append_message(
        conversation.id, message(conversation.id, Role.ASSISTANT, "", status=MessageStatus.STREAMING),
    )
    await store.update_message_content(
        msg_id, "", MessageStatus.FAILED, error_kind="network", error_detail="No network connection",
    )
    await store.update_message_content(msg_id, "ok", MessageStatus.COMPLETE)

    loaded = await store.get_message(msg_id)
    assert loaded.error_kind is None
    assert loaded.error_detail is None


@pytest.mark.asyncio
async def test_update_unknown_message_raises(store):
    with pytest.raises(UnknownMessage):
        await store.update_message_content("msg_missing", "x", MessageStatus.COMPLETE)


@pytest.mark.asyncio
async def test_list_conversations_pinned_first_then_recent(store, claude_account):
    older = await store.create_conversation(account_id=claude_account.id, title="older")
    newer = await store.create_conversation(account_id=claude_account.id, title="newer")
    pinned = await store.create_conversation(account_id=claude_account.id, title="pinned")
    await store.set_pinned(pinned.id, True)
    await store.rename_conversation(newer.id, "newer renamed")

    listed = await store.list_conversations()
    assert [c.id for c in listed] == [pinned.id, newer.id, older.id]


@pytest.mark.asyncio
async def test_delete_account_archives_conversations(store, claude_account, conversation):
    affected = await store.delete_account(claude_account.id)

    assert affected == 1
    archived = await store.get_conversation(conversation.id)
    assert archived.archived
    assert archived.account_id is None
    assert await store.list_conversations() == []
    assert [c.id for c in await store.list_conversations(include_archived=True)] == [conversation.id]


@pytest.mark.asyncio
async def test_delete_account_can_reassign(store, claude_account, local_account, conversation):
    affected = await store.delete_account(claude_account.id, reassign_to=local_account.id)

    assert affected == 1
    moved = await store.get_conversation(conversation.id)
    assert moved.account_id == local_account.id
    assert not moved.archived


@pytest.mark.asyncio
async def test_delete_account_cannot_reassign_to_itself(store, claude_account):
    with pytest.raises(InvalidRequest):
        await store.delete_account(claude_account.id, reassign_to=claude_account.id)


@pytest.mark.asyncio
async def test_delete_conversation_cascades_messages(store, conversation):
    msg_id = await store.append_message(conversation.id, message(conversation.id, Role.USER, "bye"))

    await store.delete_conversation(conversation.id)

    with pytest.raises(UnknownConversation):
        await store.load_conversation(conversation.id)
    with pytest.raises(UnknownMessage):
        await store.get_message(msg_id)


@pytest.mark.asyncio
async def test_recover_interrupted_fails_streaming_rows_keeping_content(store, conversation):
    msg_id = await store.append_message(
        conversation.id,
        message(conversation.id, Role.ASSISTANT, "half a repl", status=MessageStatus.STREAMING),
    )

    assert await store.recover_interrupted() == 1

    loaded = await store.get_message(msg_id)
    assert loaded.status is MessageStatus.FAILED
    assert loaded.content == "half a repl"
    assert loaded.error_kind == "interrupted"
    assert loaded.error_detail.startswith("Response was interrupted before it finished")
    assert await store.recover_interrupted() == 0


@pytest.mark.asyncio
async def test_edit_message_deactivates_later_messages(store, conversation):
    ids = [
        await store.append_message(conversation.id, message(conversation.id, role, content))
        for role, content in [
            (Role.USER, "Q1"), (Role.ASSISTANT, "A1"), (Role.USER, "Q2"), (Role.ASSISTANT, "A2"),
        ]
    ]

    assert await store.edit_message(ids[0], "Q1 edited") == 3

    loaded = await store.load_conversation(conversation.id)
    assert [(m.id, m.content) for m in loaded] == [(ids[0], "Q1 edited")]
    assert (await store.get_message(ids[3])).content == "A2"

    # New rows follow the deactivated ones
    reply_id = await store.append_message(conversation.id, message(conversation.id, Role.ASSISTANT, "A1b"))
    assert [m.id for m in await store.load_conversation(conversation.id)] == [ids[0], reply_id]


@pytest.mark.asyncio
async def test_edit_message_rejects_inactive_or_unknown(store, conversation):
    first = await store.append_message(conversation.id, message(conversation.id, Role.USER, "Q1"))
    second = await store.append_message(conversation.id, message(conversation.id, Role.USER, "Q2"))
    await store.edit_message(first, "Q1 edited")

    with pytest.raises(UnknownMessage):
        await store.edit_message(second, "Q2 edited")
    with pytest.raises(UnknownMessage):
        await store.edit_message("msg_missing", "x")


@pytest.mark.asyncio
async def test_account_usage_accumulates(store, claude_account):
    await store.add_account_usage(claude_account.id, TokenUsage(10, 5))
    await store.add_account_usage(claude_account.id, TokenUsage(None, 3))

    account = await store.get_account(claude_account.id)
    assert (account.total_input_tokens, account.total_output_tokens) == (10, 8)


@pytest.mark.asyncio
async def test_settings_key_value(store):
    assert await store.get_setting("app_settings") is None
    await store.set_setting("app_settings", "{}")
    await store.set_setting("app_settings", '{"temperature": 0.5}')
    assert await store.get_setting("app_settings") == '{"temperature": 0.5}'


@pytest.mark.asyncio
async def test_init_upgrades_messages_table_without_active_flag():
    old = ConversationStore.from_url("sqlite+aiosqlite:///:memory:")
    async with old._engine.begin() as conn:  # pylint: disable=protected-access
        await conn.execute(text(
            "CREATE TABLE messages ("
            "id VARCHAR(64) PRIMARY KEY, "
            "conversation_id VARCHAR(64) NOT NULL REFERENCES conversations(id) ON DELETE CASCADE, "
            "role VARCHAR(20) NOT NULL, content TEXT NOT NULL, status VARCHAR(20) NOT NULL, "
            "sequence INTEGER NOT NULL, created_at VARCHAR(40) NOT NULL, model VARCHAR(255), "
            "input_tokens INTEGER, output_tokens INTEGER, error_kind VARCHAR(40), "
            "error_reason VARCHAR(40), error_detail TEXT)"
        ))
    try:
        await old.init()
        await old.init()
        account = await old.create_account(provider="claude", display_name="Work", model="claude-test")
        conv = await old.create_conversation(account_id=account.id)
        msg_id = await old.append_message(conv.id, message(conv.id, Role.USER, "still works"))

        assert [m.id for m in await old.load_conversation(conv.id)] == [msg_id]
    finally:
        await old.close()
