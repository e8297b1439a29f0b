# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from datetime import datetime, timezone

import pytest

from echo_chat.errors import InvalidRequest
from echo_chat.models.account import Account
from echo_chat.models.conversation import Conversation
from echo_chat.models.message import ImageAttachment, Message, MessageStatus, Role
from echo_chat.services.export import export_to_markdown
from echo_chat.services.settings import ChatSettings, SettingsService, settings_from_json

NOW = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


def msg(role: Role, content: str, status: MessageStatus = MessageStatus.COMPLETE, **kwargs) -> Message:
    return Message(
        id=f"msg_{content}",
        conversation_id="conv_1",
        role=role,
        content=content,
        status=status,
        created_at=NOW,
        **kwargs,
    )


# ---------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------

def test_markdown_export_layout():
    conversation = Conversation(
        id="conv_1",
        title="Trip planning",
        account_id="acct_1",
        created_at=NOW,
        updated_at=NOW,
        system_prompt="Be brief.",
    )
    account = Account(
        id="acct_1", provider="claude", display_name="Work", model="claude-test", created_at=NOW,
    )
    messages = [
        msg(Role.USER, "Where to?", attachments=(ImageAttachment("image/png", b"png", "map.png"),)),
        msg(Role.ASSISTANT, "Lisbon.", model="claude-test"),
        msg(Role.ASSISTANT, "Porto is", MessageStatus.CANCELLED),
        msg(Role.ASSISTANT, "", MessageStatus.FAILED, error_kind="network", error_detail="No network connection"),
    ]

    text = export_to_markdown(conversation, messages, account)

    assert text.startswith("# Trip planning\n\n> Model: claude-test | Date: 2024-03-01 12:30\n\n")
    assert "> System Prompt: Be brief.\n\n---\n\n" in text
    assert "### You\n\n_Attachments: map.png_\n\nWhere to?\n\n" in text
    assert "### claude-test\n\nLisbon.\n\n" in text
    assert "Porto is\n\n_(cancelled)_" in text
    assert "_(failed: No network connection)_" in text


def test_export_is_deterministic_without_account():
    conversation = Conversation(id="c", title="T", account_id=None, created_at=NOW, updated_at=NOW, archived=True)
    messages = [msg(Role.USER, "hi")]

    first = export_to_markdown(conversation, messages)
    assert first == export_to_markdown(conversation, messages)
    assert "> Model: unknown" in first
    assert "System Prompt" not in first


# ---------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------

class MemoryBackend:
    def __init__(self, raw: str | None = None) -> None:
        self.raw = raw

    async def get_setting(self, key: str) -> str | None:
        return self.raw

    async def set_setting(self, key: str, value: str) -> None:
        self.raw = value


def test_missing_or_corrupt_settings_fall_back_to_defaults(quiet_logs):
    assert settings_from_json(None) == ChatSettings()
    assert settings_from_json("{not json") == ChatSettings()
    assert any('"SETTINGS_CORRUPT"' in line for line in quiet_logs)


def test_unknown_keys_are_ignored():
    settings = settings_from_json(json.dumps({"temperature": 0.4, "theme": "dark"}))
    assert settings.temperature == 0.4
    assert settings.stream_responses is True


def test_default_temperature_is_not_sent():
    assert ChatSettings().request_temperature is None
    assert ChatSettings(temperature=0.7).request_temperature == 0.7


@pytest.mark.asyncio
async def test_update_persists_and_validates():
    backend = MemoryBackend()
    service = SettingsService(backend)

    saved = await service.update(stream_responses=False, max_tokens=1024)
    assert saved.stream_responses is False
    assert (await service.load()).max_tokens == 1024

    with pytest.raises(InvalidRequest):
        await service.update(temperature=3.5)
    with pytest.raises(InvalidRequest):
        await service.update(colour="blue")
    assert (await service.load()).temperature == 1.0
