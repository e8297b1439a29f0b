"""
Chat core wiring.

Builds the long-lived collaborators (store, secret store, registry, bus,
orchestrator, services) from an AppConfig. One ChatCore per process.
"""

from __future__ import annotations

from dataclasses import dataclass

from echo_chat.adapters.llm.registry import ProviderRegistry
from echo_chat.config import AppConfig
from echo_chat.notifications.bus import EventBus
from echo_chat.observability.logger import log_event
from echo_chat.orchestrator.chat import ChatOrchestrator
from echo_chat.orchestrator.state_dataclass import TurnPolicy
from echo_chat.services.accounts import AccountService
from echo_chat.services.secret_store import (
    InMemorySecretStore,
    KeyringSecretStore,
    SecretStore,
)
from echo_chat.services.settings import SettingsService
from echo_chat.storage.conversation_store import ConversationStore


def build_secret_store(config: AppConfig) -> SecretStore:
    if config.secret_backend == "memory":
        return InMemorySecretStore()
    if config.secret_backend == "keyring":
        return KeyringSecretStore(config.keyring_service)
    raise ValueError(f"unknown secret backend '{config.secret_backend}' (expected keyring or memory)")


@dataclass
class ChatCore:
    config: AppConfig
    store: ConversationStore
    secrets: SecretStore
    registry: ProviderRegistry
    bus: EventBus
    settings: SettingsService
    accounts: AccountService
    orchestrator: ChatOrchestrator

    async def start(self) -> None:
        """Create the schema and fail any turn a previous process left streaming."""
        await self.store.init()
        recovered = await self.store.recover_interrupted()
        log_event({
            "event_type": "CORE_STARTED",
            "env": self.config.env,
            "interrupted_messages_recovered": recovered,
        })

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        await self.registry.aclose()
        await self.store.close()
        log_event({"event_type": "CORE_STOPPED"})


def build_core(
    config: AppConfig,
    *,
    store: ConversationStore | None = None,
    secrets: SecretStore | None = None,
    registry: ProviderRegistry | None = None,
    policy: TurnPolicy | None = None,
) -> ChatCore:
    store = store or ConversationStore.from_url(config.database_url)
    secrets = secrets or build_secret_store(config)
    registry = registry or ProviderRegistry(secrets)
    bus = EventBus()
    settings = SettingsService(store)
    return ChatCore(
        config=config,
        store=store,
        secrets=secrets,
        registry=registry,
        bus=bus,
        settings=settings,
        accounts=AccountService(store=store, registry=registry, secrets=secrets),
        orchestrator=ChatOrchestrator(
            store=store,
            registry=registry,
            bus=bus,
            settings=settings,
            policy=policy,
        ),
    )
