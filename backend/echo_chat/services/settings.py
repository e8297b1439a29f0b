"""
Chat settings persisted as one JSON document in the settings table.

Unknown keys in a stored document are ignored and missing keys fall back
to defaults, so older documents keep loading after fields are added.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Protocol

from echo_chat.constants import (
    DEFAULT_STREAM_RESPONSES,
    PROVIDER_DEFAULT_TEMPERATURE,
    SETTINGS_KEY,
)
from echo_chat.errors import InvalidRequest
from echo_chat.observability.logger import log_event


@dataclass(frozen=True)
class ChatSettings:
    stream_responses: bool = DEFAULT_STREAM_RESPONSES
    temperature: float = PROVIDER_DEFAULT_TEMPERATURE
    default_system_prompt: str | None = None
    max_tokens: int | None = None

    @property
    def request_temperature(self) -> float | None:
        """Temperature to send, or None to use the provider default."""
        if self.temperature == PROVIDER_DEFAULT_TEMPERATURE:
            return None
        return self.temperature

    def validate(self) -> ChatSettings:
        if not 0.0 <= self.temperature <= 2.0:
            raise InvalidRequest(f"temperature must be between 0 and 2, got {self.temperature}")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise InvalidRequest(f"max_tokens must be positive, got {self.max_tokens}")
        return self


class SettingsBackend(Protocol):
    async def get_setting(self, key: str) -> str | None: ...
    async def set_setting(self, key: str, value: str) -> None: ...


_FIELDS = frozenset(f.name for f in fields(ChatSettings))


def settings_from_json(raw: str | None) -> ChatSettings:
    if not raw:
        return ChatSettings()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        log_event({"event_type": "SETTINGS_CORRUPT", "error": str(e)})
        return ChatSettings()
    if not isinstance(data, dict):
        return ChatSettings()
    return ChatSettings(**{k: v for k, v in data.items() if k in _FIELDS})


class SettingsService:
    def __init__(self, backend: SettingsBackend) -> None:
        self._backend = backend

    async def load(self) -> ChatSettings:
        return settings_from_json(await self._backend.get_setting(SETTINGS_KEY))

    async def save(self, settings: ChatSettings) -> ChatSettings:
        settings.validate()
        await self._backend.set_setting(SETTINGS_KEY, json.dumps(asdict(settings)))
        return settings

    async def update(self, **changes: Any) -> ChatSettings:
        """Apply a partial update; unknown field names are rejected."""
        unknown = set(changes) - _FIELDS
        if unknown:
            raise InvalidRequest(f"unknown settings: {', '.join(sorted(unknown))}")
        current = await self.load()
        return await self.save(replace(current, **changes))
