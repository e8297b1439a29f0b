"""
Provider registry: tagged dispatch from an account's provider kind to
the adapter that speaks its wire protocol.

Holds no mutable session state. The only side effect of resolve() is a
single secret lookup, performed off the event loop because keyring
backends block.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping

from echo_chat.adapters.llm.base import ChatReply, ChatRequest, ModelInfo, ProviderAdapter
from echo_chat.adapters.llm.claude import ClaudeAdapter
from echo_chat.adapters.llm.gemini import GeminiAdapter
from echo_chat.adapters.llm.local_compatible import LocalCompatibleAdapter
from echo_chat.adapters.llm.stream_events import StreamEvent
from echo_chat.errors import MissingCredential, UnknownProviderKind
from echo_chat.models.account import Account, ProviderKind
from echo_chat.models.capability import ProviderCapability
from echo_chat.services.secret_store import SecretStore

CAPABILITIES: Mapping[ProviderKind, ProviderCapability] = {
    ProviderKind.CLAUDE: ProviderCapability(
        supports_streaming=True,
        supports_images=True,
        max_context_note="200k token context window",
    ),
    ProviderKind.GEMINI: ProviderCapability(
        supports_streaming=True,
        supports_images=True,
        max_context_note="up to 1M token context window",
    ),
    ProviderKind.LOCAL: ProviderCapability(
        supports_streaming=True,
        supports_images=False,
        max_context_note="context window defined by the local server",
    ),
}


def build_default_adapters() -> dict[ProviderKind, ProviderAdapter]:
    return {
        ProviderKind.CLAUDE: ClaudeAdapter(),
        ProviderKind.GEMINI: GeminiAdapter(),
        ProviderKind.LOCAL: LocalCompatibleAdapter(),
    }


def parse_provider_kind(value: str) -> ProviderKind:
    try:
        return ProviderKind(value)
    except ValueError as e:
        raise UnknownProviderKind(f"unknown provider kind '{value}'") from e


@dataclass(frozen=True)
class ProviderAdapterHandle:
    """An adapter bound to one account and its resolved secret."""

    kind: ProviderKind
    adapter: ProviderAdapter
    account: Account
    capability: ProviderCapability
    secret: str | None = field(default=None, repr=False)

    def build_request(self, **kwargs) -> ChatRequest:
        return ChatRequest(account=self.account, secret=self.secret, **kwargs)

    def send_streaming(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        return self.adapter.send_streaming(request)

    async def send_once(self, request: ChatRequest) -> ChatReply:
        return await self.adapter.send_once(request)

    async def list_models(self) -> list[ModelInfo]:
        return await self.adapter.list_models(
            secret=self.secret,
            endpoint_url=self.account.endpoint_url,
        )


class ProviderRegistry:
    def __init__(
        self,
        secret_store: SecretStore,
        adapters: Mapping[ProviderKind, ProviderAdapter] | None = None,
    ) -> None:
        self._secrets = secret_store
        self._adapters = dict(adapters) if adapters is not None else build_default_adapters()

    async def resolve(self, account: Account) -> ProviderAdapterHandle:
        """
        Bind the account to its adapter.

        Raises:
            UnknownProviderKind: malformed provider string, no adapter
                registered, or a local account without an endpoint.
            MissingCredential: a provider that requires a key has none.
        """
        kind = parse_provider_kind(account.provider)
        adapter = self.adapter_for(kind)

        if kind is ProviderKind.LOCAL and not account.endpoint_url:
            raise UnknownProviderKind(f"local account '{account.id}' has no endpoint URL")

        secret = await asyncio.to_thread(self._secrets.get_secret, account.id)
        if not secret and kind.requires_credential:
            raise MissingCredential(f"no credential stored for account '{account.id}'")

        return ProviderAdapterHandle(
            kind=kind,
            adapter=adapter,
            account=account,
            capability=self.capabilities(kind),
            secret=secret or None,
        )

    def adapter_for(self, kind: ProviderKind) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise UnknownProviderKind(f"no adapter registered for '{kind.value}'")
        return adapter

    @staticmethod
    def capabilities(kind: ProviderKind) -> ProviderCapability:
        return CAPABILITIES[kind]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
