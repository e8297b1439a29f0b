"""
Account management: credentials, validation and model discovery.

Credentials are validated against the provider (by listing models)
before anything is stored. The secret goes to the SecretStore keyed by
account id; the database row never holds it.
"""

from __future__ import annotations

import asyncio

from echo_chat.adapters.llm.base import ModelInfo
from echo_chat.adapters.llm.registry import ProviderRegistry, parse_provider_kind
from echo_chat.constants import LOCAL_DEFAULT_BASE_URL
from echo_chat.errors import InvalidRequest, MissingCredential, StorageFailure
from echo_chat.models.account import Account, ProviderKind
from echo_chat.models.ids import new_id
from echo_chat.observability.logger import log_event
from echo_chat.observability.metrics import timed
from echo_chat.services.secret_store import SecretStore, SecretStoreError
from echo_chat.storage.conversation_store import ConversationStore


class AccountService:
    def __init__(
        self,
        *,
        store: ConversationStore,
        registry: ProviderRegistry,
        secrets: SecretStore,
    ) -> None:
        self._store = store
        self._registry = registry
        self._secrets = secrets

    async def add_account(
        self,
        *,
        provider: str,
        display_name: str,
        model: str,
        secret: str | None = None,
        endpoint_url: str | None = None,
        validate: bool = True,
    ) -> Account:
        """
        Validate credentials, store the secret, then create the record.

        Raises:
            UnknownProviderKind, MissingCredential, InvalidRequest,
            ProviderRejected / NetworkError / ProviderTimeout from
            validation, StorageFailure.
        """
        kind = parse_provider_kind(provider)
        secret = (secret or "").strip() or None
        if kind.requires_credential and secret is None:
            raise MissingCredential(f"{kind.label} accounts require an API key")
        if not display_name.strip():
            raise InvalidRequest("display name is empty")
        if not model.strip():
            raise InvalidRequest("model is empty")
        if kind is ProviderKind.LOCAL:
            endpoint_url = (endpoint_url or LOCAL_DEFAULT_BASE_URL).rstrip("/")

        if validate:
            await self.validate_credentials(kind, secret=secret, endpoint_url=endpoint_url)

        account_id = new_id("acct")
        if secret is not None:
            await self._set_secret(account_id, secret)
        try:
            account = await self._store.create_account(
                provider=kind.value,
                display_name=display_name.strip(),
                model=model.strip(),
                endpoint_url=endpoint_url,
                account_id=account_id,
            )
        except StorageFailure:
            if secret is not None:
                await self._delete_secret(account_id)
            raise

        log_event({
            "event_type": "ACCOUNT_ADDED",
            "account_id": account.id,
            "provider": kind.value,
            "model": account.model,
            "has_credential": secret is not None,
        })
        return account

    async def validate_credentials(
        self,
        kind: ProviderKind,
        *,
        secret: str | None,
        endpoint_url: str | None = None,
    ) -> list[ModelInfo]:
        adapter = self._registry.adapter_for(kind)
        with timed("provider_list_models_ms", details={"provider": kind.value}):
            return await adapter.list_models(secret=secret, endpoint_url=endpoint_url)

    async def update_credentials(self, account_id: str, secret: str) -> None:
        account = await self._store.get_account(account_id)
        kind = parse_provider_kind(account.provider)
        secret = secret.strip()
        if not secret:
            raise MissingCredential("API key is empty")
        await self.validate_credentials(kind, secret=secret, endpoint_url=account.endpoint_url)
        await self._set_secret(account_id, secret)
        log_event({"event_type": "ACCOUNT_CREDENTIALS_UPDATED", "account_id": account_id})

    async def list_models(self, account_id: str) -> list[ModelInfo]:
        account = await self._store.get_account(account_id)
        handle = await self._registry.resolve(account)
        with timed("provider_list_models_ms", details={"provider": handle.kind.value}):
            return await handle.list_models()

    async def delete_account(self, account_id: str, *, reassign_to: str | None = None) -> int:
        """
        Delete the record and its credential.

        Conversations are reassigned to `reassign_to` or archived; returns
        how many were affected.
        """
        affected = await self._store.delete_account(account_id, reassign_to=reassign_to)
        await self._delete_secret(account_id)
        log_event({
            "event_type": "ACCOUNT_DELETED",
            "account_id": account_id,
            "reassigned_to": reassign_to,
            "conversations_affected": affected,
        })
        return affected

    # ------------------------------------------------------------------
    # Secret store (blocking backends run off the event loop)
    # ------------------------------------------------------------------

    async def _set_secret(self, account_id: str, secret: str) -> None:
        try:
            await asyncio.to_thread(self._secrets.set_secret, account_id, secret)
        except SecretStoreError as e:
            raise StorageFailure(str(e)) from e

    async def _delete_secret(self, account_id: str) -> None:
        try:
            await asyncio.to_thread(self._secrets.delete_secret, account_id)
        except SecretStoreError as e:
            # Record is gone; a stale keychain entry is unreachable
            log_event({
                "event_type": "SECRET_DELETE_FAILED",
                "account_id": account_id,
                "error": str(e),
            })
