# pylint: disable=missing-module-docstring,missing-function-docstring

from typing import AsyncIterator

import pytest
import pytest_asyncio

from chat_fakes import FlakyStore, ScriptedAdapter
from echo_chat.adapters.llm.registry import ProviderRegistry
from echo_chat.models.account import ProviderKind
from echo_chat.notifications.bus import EventBus
from echo_chat.observability import logger
from echo_chat.orchestrator.chat import ChatOrchestrator
from echo_chat.orchestrator.state_dataclass import TurnPolicy
from echo_chat.services.secret_store import InMemorySecretStore
from echo_chat.storage.connection import create_engine_for

MEMORY_DB = "sqlite+aiosqlite:///:memory:"

FAST_POLICY = TurnPolicy(
    inactivity_timeout_ms=2_000,
    flush_interval_ms=20,
    flush_max_bytes=512,
)


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Capture JSONL output instead of writing to stdout."""
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    return lines


@pytest_asyncio.fixture
async def store() -> AsyncIterator[FlakyStore]:
    s = FlakyStore(create_engine_for(MEMORY_DB))
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def secrets() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def claude() -> ScriptedAdapter:
    return ScriptedAdapter(ProviderKind.CLAUDE)


@pytest.fixture
def local() -> ScriptedAdapter:
    return ScriptedAdapter(ProviderKind.LOCAL)


@pytest.fixture
def registry(secrets: InMemorySecretStore, claude: ScriptedAdapter, local: ScriptedAdapter) -> ProviderRegistry:
    return ProviderRegistry(secrets, adapters={
        ProviderKind.CLAUDE: claude,
        ProviderKind.LOCAL: local,
    })


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def orchestrator(
    store: FlakyStore,
    registry: ProviderRegistry,
    bus: EventBus,
) -> AsyncIterator[ChatOrchestrator]:
    orch = ChatOrchestrator(store=store, registry=registry, bus=bus, policy=FAST_POLICY)
    yield orch
    await orch.shutdown()


@pytest_asyncio.fixture
async def claude_account(store: FlakyStore, secrets: InMemorySecretStore):
    account = await store.create_account(provider="claude", display_name="Work", model="claude-test")
    secrets.set_secret(account.id, "sk-test-secret")
    return account


@pytest_asyncio.fixture
async def local_account(store: FlakyStore):
    return await store.create_account(
        provider="local",
        display_name="Laptop",
        model="llama3",
        endpoint_url="http://localhost:11434",
    )


@pytest_asyncio.fixture
async def conversation(store: FlakyStore, claude_account):
    return await store.create_conversation(account_id=claude_account.id)
