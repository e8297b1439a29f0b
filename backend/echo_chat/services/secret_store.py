"""Credential storage keyed by account id.

The core only ever sees the SecretStore contract. KeyringSecretStore
maps onto the system keychain through the `keyring` library (Secret
Service on Linux, Keychain on macOS, Credential Manager on Windows);
InMemorySecretStore implements the same contract for tests and
ephemeral runs.

Secret values are never logged; only account ids are.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "io.echo.chat"


class SecretStoreError(Exception):
    """A secret could not be written or removed."""


@runtime_checkable
class SecretStore(Protocol):
    def get_secret(self, account_id: str) -> str | None:
        ...

    def set_secret(self, account_id: str, secret: str) -> None:
        ...

    def delete_secret(self, account_id: str) -> None:
        ...


class KeyringSecretStore:
    """Thin wrapper around keyring for per-account credentials."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        self._service = service_name

    def get_secret(self, account_id: str) -> str | None:
        """Retrieve a credential. Returns None if not set or unreadable."""
        try:
            return keyring.get_password(self._service, account_id)
        except KeyringError:
            logger.warning("Keyring read failed for account %s", account_id, exc_info=True)
            return None

    def set_secret(self, account_id: str, secret: str) -> None:
        try:
            keyring.set_password(self._service, account_id, secret)
        except KeyringError as e:
            raise SecretStoreError(f"could not store credential for account {account_id}") from e
        logger.info("Stored credential for account %s", account_id)

    def delete_secret(self, account_id: str) -> None:
        """Remove a credential; deleting a missing one is not an error."""
        try:
            keyring.delete_password(self._service, account_id)
            logger.info("Deleted credential for account %s", account_id)
        except PasswordDeleteError:
            logger.debug("Credential for account %s not found for deletion", account_id)
        except KeyringError as e:
            raise SecretStoreError(f"could not delete credential for account {account_id}") from e


class InMemorySecretStore:
    """Process-lifetime store implementing the same contract."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(secrets or {})
        self.lookups = 0

    def get_secret(self, account_id: str) -> str | None:
        self.lookups += 1
        return self._secrets.get(account_id)

    def set_secret(self, account_id: str, secret: str) -> None:
        self._secrets[account_id] = secret

    def delete_secret(self, account_id: str) -> None:
        self._secrets.pop(account_id, None)

    def __repr__(self) -> str:
        return f"InMemorySecretStore(accounts={sorted(self._secrets)})"
