# pylint: disable=missing-module-docstring,missing-function-docstring

from datetime import datetime, timezone

import pytest

from echo_chat.adapters.llm.registry import (
    CAPABILITIES,
    ProviderRegistry,
    parse_provider_kind,
)
from echo_chat.errors import MissingCredential, UnknownProviderKind
from echo_chat.models.account import Account, ProviderKind


def test_parse_provider_kind_rejects_unknown_strings():
    assert parse_provider_kind("gemini") is ProviderKind.GEMINI
    with pytest.raises(UnknownProviderKind):
        parse_provider_kind("openai-cloud")


def test_capability_table():
    assert CAPABILITIES[ProviderKind.CLAUDE].supports_images
    assert CAPABILITIES[ProviderKind.GEMINI].supports_images
    assert not CAPABILITIES[ProviderKind.LOCAL].supports_images
    assert all(c.supports_streaming for c in CAPABILITIES.values())


@pytest.mark.asyncio
async def test_resolve_binds_adapter_and_secret(registry, claude, claude_account, secrets):
    handle = await registry.resolve(claude_account)

    assert handle.kind is ProviderKind.CLAUDE
    assert handle.adapter is claude
    assert handle.secret == "sk-test-secret"
    assert "sk-test-secret" not in repr(handle)

    request = handle.build_request(content="Hi")
    assert request.secret == "sk-test-secret"
    assert request.account == claude_account
    assert "sk-test-secret" not in repr(request)
    assert secrets.lookups == 1


@pytest.mark.asyncio
async def test_resolve_without_secret_is_missing_credential(registry, store):
    account = await store.create_account(provider="claude", display_name="No key", model="m")
    with pytest.raises(MissingCredential):
        await registry.resolve(account)


@pytest.mark.asyncio
async def test_local_account_needs_no_secret(registry, local_account):
    handle = await registry.resolve(local_account)
    assert handle.secret is None
    assert handle.capability.supports_images is False


@pytest.mark.asyncio
async def test_malformed_or_unregistered_provider_is_rejected(registry, store, secrets):
    bogus = await store.create_account(provider="bard", display_name="Old", model="m")
    gemini = await store.create_account(provider="gemini", display_name="G", model="m")
    secrets.set_secret(gemini.id, "sk")

    with pytest.raises(UnknownProviderKind):
        await registry.resolve(bogus)
    # The test registry only carries claude and local adapters
    with pytest.raises(UnknownProviderKind):
        await registry.resolve(gemini)


@pytest.mark.asyncio
async def test_local_account_without_endpoint_is_rejected(secrets, local):
    registry = ProviderRegistry(secrets, adapters={ProviderKind.LOCAL: local})
    account = Account(
        id="acct_x",
        provider="local",
        display_name="Broken",
        model="llama3",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    with pytest.raises(UnknownProviderKind):
        await registry.resolve(account)
