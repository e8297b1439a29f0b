"""Account: a configured identity for one provider kind."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ProviderKind(str, Enum):
    CLAUDE = "claude"
    GEMINI = "gemini"
    LOCAL = "local"

    @property
    def requires_credential(self) -> bool:
        return self is not ProviderKind.LOCAL

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    ProviderKind.CLAUDE: "Claude",
    ProviderKind.GEMINI: "Gemini",
    ProviderKind.LOCAL: "Local (OpenAI-compatible)",
}


@dataclass(frozen=True)
class Account:
    """
    Stored account record.

    `provider` is kept as the raw stored string; the registry parses it
    into a ProviderKind and rejects malformed values. Secret material is
    never held here, only looked up by `id` in the secret store.
    """

    id: str
    provider: str
    display_name: str
    model: str
    created_at: datetime
    endpoint_url: str | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
