# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from echo_chat.services import secret_store
from echo_chat.services.secret_store import (
    InMemorySecretStore,
    KeyringSecretStore,
    SecretStore,
    SecretStoreError,
)


class FakeKeyring:
    def __init__(self) -> None:
        self.passwords: dict[tuple[str, str], str] = {}
        self.fail = False

    def get_password(self, service: str, username: str) -> str | None:
        if self.fail:
            raise KeyringError("locked")
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if self.fail:
            raise KeyringError("locked")
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, username)]


@pytest.fixture
def fake_keyring(monkeypatch: pytest.MonkeyPatch) -> FakeKeyring:
    fake = FakeKeyring()
    monkeypatch.setattr(secret_store.keyring, "get_password", fake.get_password)
    monkeypatch.setattr(secret_store.keyring, "set_password", fake.set_password)
    monkeypatch.setattr(secret_store.keyring, "delete_password", fake.delete_password)
    return fake


def test_keyring_store_keys_secrets_by_service_and_account(fake_keyring: FakeKeyring):
    store = KeyringSecretStore("io.echo.test")

    store.set_secret("acct_1", "sk-123")

    assert fake_keyring.passwords == {("io.echo.test", "acct_1"): "sk-123"}
    assert store.get_secret("acct_1") == "sk-123"
    assert store.get_secret("acct_2") is None


def test_deleting_missing_secret_is_not_an_error(fake_keyring: FakeKeyring):
    store = KeyringSecretStore()
    store.delete_secret("acct_missing")
    store.set_secret("acct_1", "sk")
    store.delete_secret("acct_1")
    assert fake_keyring.passwords == {}


def test_keyring_write_failure_raises_secret_store_error(fake_keyring: FakeKeyring):
    fake_keyring.fail = True
    store = KeyringSecretStore()

    with pytest.raises(SecretStoreError):
        store.set_secret("acct_1", "sk")
    assert store.get_secret("acct_1") is None


def test_both_stores_satisfy_the_contract():
    assert isinstance(KeyringSecretStore(), SecretStore)
    assert isinstance(InMemorySecretStore(), SecretStore)


def test_in_memory_repr_never_shows_values():
    store = InMemorySecretStore({"acct_1": "sk-very-secret"})
    assert "sk-very-secret" not in repr(store)
    assert "acct_1" in repr(store)
