"""
HTTP request / response bodies.

Responses are built from the frozen domain models; secrets never appear
in any response model.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime

from pydantic import BaseModel, Field

from echo_chat.errors import InvalidRequest
from echo_chat.models.account import Account
from echo_chat.models.conversation import Conversation
from echo_chat.models.message import ImageAttachment, Message
from echo_chat.services.settings import ChatSettings


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------

class AccountCreate(BaseModel):
    provider: str
    display_name: str
    model: str
    api_key: str | None = Field(default=None, repr=False)
    endpoint_url: str | None = None
    validate_credentials: bool = True


class AccountUpdate(BaseModel):
    display_name: str | None = None
    model: str | None = None
    api_key: str | None = Field(default=None, repr=False)


class ConversationCreate(BaseModel):
    account_id: str
    title: str | None = None
    system_prompt: str | None = None


class ConversationUpdate(BaseModel):
    title: str | None = None
    pinned: bool | None = None
    system_prompt: str | None = None
    account_id: str | None = None
    archived: bool | None = None


class ImageIn(BaseModel):
    mime_type: str
    data_base64: str
    filename: str | None = None

    def to_attachment(self) -> ImageAttachment:
        try:
            data = base64.b64decode(self.data_base64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidRequest(f"attachment '{self.filename or self.mime_type}' is not valid base64") from e
        return ImageAttachment(mime_type=self.mime_type, data=data, filename=self.filename)


class SendRequest(BaseModel):
    content: str = ""
    images: list[ImageIn] = Field(default_factory=list)
    wait: bool = False


class EditRequest(BaseModel):
    content: str
    wait: bool = False


class RegenerateRequest(BaseModel):
    wait: bool = False


class SettingsBody(BaseModel):
    stream_responses: bool = True
    temperature: float = 1.0
    default_system_prompt: str | None = None
    max_tokens: int | None = None

    @classmethod
    def from_settings(cls, settings: ChatSettings) -> SettingsBody:
        return cls(
            stream_responses=settings.stream_responses,
            temperature=settings.temperature,
            default_system_prompt=settings.default_system_prompt,
            max_tokens=settings.max_tokens,
        )

    def to_settings(self) -> ChatSettings:
        return ChatSettings(**self.model_dump())


# ---------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------

class AccountOut(BaseModel):
    id: str
    provider: str
    display_name: str
    model: str
    endpoint_url: str | None
    created_at: datetime
    total_input_tokens: int
    total_output_tokens: int

    @classmethod
    def from_model(cls, account: Account) -> AccountOut:
        return cls(
            id=account.id,
            provider=account.provider,
            display_name=account.display_name,
            model=account.model,
            endpoint_url=account.endpoint_url,
            created_at=account.created_at,
            total_input_tokens=account.total_input_tokens,
            total_output_tokens=account.total_output_tokens,
        )


class ModelOut(BaseModel):
    id: str
    display_name: str


class ConversationOut(BaseModel):
    id: str
    title: str
    account_id: str | None
    pinned: bool
    archived: bool
    system_prompt: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, conversation: Conversation) -> ConversationOut:
        return cls(
            id=conversation.id,
            title=conversation.title,
            account_id=conversation.account_id,
            pinned=conversation.pinned,
            archived=conversation.archived,
            system_prompt=conversation.system_prompt,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class AttachmentOut(BaseModel):
    mime_type: str
    filename: str | None
    size_bytes: int


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    status: str
    sequence: int
    created_at: datetime
    model: str | None
    input_tokens: int | None
    output_tokens: int | None
    attachments: list[AttachmentOut]
    error_kind: str | None
    error_reason: str | None
    error_detail: str | None

    @classmethod
    def from_model(cls, message: Message) -> MessageOut:
        usage = message.usage
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role.value,
            content=message.content,
            status=message.status.value,
            sequence=message.sequence,
            created_at=message.created_at,
            model=message.model,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
            attachments=[
                AttachmentOut(mime_type=a.mime_type, filename=a.filename, size_bytes=a.size_bytes)
                for a in message.attachments
            ],
            error_kind=message.error_kind,
            error_reason=message.error_reason,
            error_detail=message.error_detail,
        )


class TurnOut(BaseModel):
    conversation_id: str
    message_id: str
    user_message_id: str | None
    run_id: int
    kind: str
    message: MessageOut | None = None
