# pylint: disable=missing-module-docstring,missing-function-docstring

from datetime import datetime, timezone

from echo_chat.context.history import build_history, resolve_system_prompt
from echo_chat.context.titles import truncate_title
from echo_chat.models.conversation import Conversation
from echo_chat.models.message import ImageAttachment, Message, MessageStatus, Role

NOW = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


def msg(role: Role, content: str, status: MessageStatus = MessageStatus.COMPLETE, **kwargs) -> Message:
    return Message(
        id=f"msg_{role.value}_{content}",
        conversation_id="conv_1",
        role=role,
        content=content,
        status=status,
        created_at=NOW,
        **kwargs,
    )


def conv(system_prompt: str | None = None) -> Conversation:
    return Conversation(
        id="conv_1",
        title="t",
        account_id="acct_1",
        created_at=NOW,
        updated_at=NOW,
        system_prompt=system_prompt,
    )


# ---------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------

def test_short_title_is_kept():
    assert truncate_title("  Plan a trip  ") == "Plan a trip"


def test_only_first_line_is_used():
    assert truncate_title("First line\nsecond line") == "First line"


def test_long_title_is_cut_to_fifty_with_ellipsis():
    title = truncate_title("x" * 80)
    assert len(title) == 50
    assert title.endswith("...")


def test_exactly_fifty_characters_is_not_cut():
    assert truncate_title("y" * 50) == "y" * 50


def test_blank_text_gives_empty_title():
    assert truncate_title("   \n  ") == ""


# ---------------------------------------------------------------------
# History
# ---------------------------------------------------------------------

def test_history_keeps_order_and_partial_replies():
    image = ImageAttachment(mime_type="image/png", data=b"png")
    history = build_history([
        msg(Role.USER, "hi", attachments=(image,)),
        msg(Role.ASSISTANT, "partial", MessageStatus.CANCELLED),
        msg(Role.USER, "again"),
        msg(Role.ASSISTANT, "", MessageStatus.FAILED),
        msg(Role.USER, "third"),
        msg(Role.ASSISTANT, "in flight", MessageStatus.STREAMING),
    ])

    assert [(t.role, t.content) for t in history] == [
        (Role.USER, "hi"),
        (Role.ASSISTANT, "partial"),
        (Role.USER, "again"),
        (Role.USER, "third"),
    ]
    assert history[0].images == (image,)


def test_system_messages_fold_into_system_prompt():
    messages = [msg(Role.SYSTEM, "Answer in French."), msg(Role.USER, "hello")]

    assert [t.role for t in build_history(messages)] == [Role.USER]
    assert resolve_system_prompt(conv("Be brief."), messages) == "Be brief.\n\nAnswer in French."


def test_conversation_prompt_wins_over_default():
    assert resolve_system_prompt(conv("Own"), default="Default") == "Own"
    assert resolve_system_prompt(conv(None), default="Default") == "Default"
    assert resolve_system_prompt(conv(None)) is None
