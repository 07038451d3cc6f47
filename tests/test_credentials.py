"""Tests for the keyring and environment credential stores."""

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringLocked, PasswordDeleteError

from gltodo.credentials import (
    SERVICE_NAME,
    EnvCredentialStore,
    KeyringCredentialStore,
    get_credential_store,
)
from gltodo.errors import CredentialUnavailable
from gltodo.models import Account, Credential
from gltodo.settings import GlTodoSettings


class MemoryKeyring(KeyringBackend):
    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}
        self.locked = False

    def get_password(self, service: str, username: str) -> str | None:
        if self.locked:
            raise KeyringLocked("locked")
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if self.locked:
            raise KeyringLocked("locked")
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.entries:
            raise PasswordDeleteError("not found")
        del self.entries[(service, username)]


@pytest.fixture
def backend():
    previous = keyring.get_keyring()
    memory = MemoryKeyring()
    keyring.set_keyring(memory)
    yield memory
    keyring.set_keyring(previous)


WORK = Account(name="work", gitlab_url="https://gitlab.corp.example")
OSS = Account(name="work", gitlab_url="https://gitlab.com")


class TestKeyringCredentialStore:
    def test_store_and_get(self, backend: MemoryKeyring) -> None:
        store = KeyringCredentialStore()
        store.store(Credential(account=WORK.key, token="glpat-work"))  # type: ignore[arg-type]

        assert backend.entries == {(SERVICE_NAME, "work@gitlab.corp.example"): "glpat-work"}
        credential = store.get(WORK)
        assert credential is not None
        assert credential.token.get_secret_value() == "glpat-work"

    def test_accounts_are_independent(self, backend: MemoryKeyring) -> None:
        store = KeyringCredentialStore()
        store.store(Credential(account=WORK.key, token="glpat-work"))  # type: ignore[arg-type]

        assert store.get(OSS) is None

    def test_clear(self, backend: MemoryKeyring) -> None:
        store = KeyringCredentialStore()
        store.store(Credential(account=WORK.key, token="glpat-work"))  # type: ignore[arg-type]

        store.clear(WORK)
        assert store.get(WORK) is None
        store.clear(WORK)  # already gone is fine

    def test_require_without_token(self, backend: MemoryKeyring) -> None:
        with pytest.raises(CredentialUnavailable, match="gltodo login"):
            KeyringCredentialStore().require(WORK)

    def test_locked_keyring_reads_as_missing(self, backend: MemoryKeyring) -> None:
        backend.locked = True
        assert KeyringCredentialStore().get(WORK) is None

    def test_locked_keyring_refuses_store(self, backend: MemoryKeyring) -> None:
        backend.locked = True
        with pytest.raises(CredentialUnavailable):
            KeyringCredentialStore().store(Credential(account=WORK.key, token="glpat"))  # type: ignore[arg-type]


class TestEnvCredentialStore:
    def test_reads_settings_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GITLAB_TOKEN", raising=False)
        store = EnvCredentialStore(GlTodoSettings(token="glpat-env"))  # type: ignore[call-arg, arg-type]

        credential = store.require(WORK)
        assert credential.account == WORK.key
        assert credential.token.get_secret_value() == "glpat-env"

    def test_falls_back_to_gitlab_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GLTODO_TOKEN", raising=False)
        monkeypatch.setenv("GITLAB_TOKEN", "glpat-gitlab")
        store = EnvCredentialStore(GlTodoSettings())  # type: ignore[call-arg]

        credential = store.get(WORK)
        assert credential is not None
        assert credential.token.get_secret_value() == "glpat-gitlab"

    def test_clear_hides_token_for_this_process(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITLAB_TOKEN", "glpat-gitlab")
        store = EnvCredentialStore(GlTodoSettings(token="glpat-env"))  # type: ignore[call-arg, arg-type]

        store.clear(WORK)
        assert store.get(WORK) is None

    def test_store_is_refused(self) -> None:
        store = EnvCredentialStore(GlTodoSettings())  # type: ignore[call-arg]
        with pytest.raises(CredentialUnavailable, match="read-only"):
            store.store(Credential(account=WORK.key, token="glpat"))  # type: ignore[arg-type]


class TestGetCredentialStore:
    def test_keyring_by_default(self) -> None:
        assert isinstance(get_credential_store(GlTodoSettings()), KeyringCredentialStore)  # type: ignore[call-arg]

    def test_env(self) -> None:
        settings = GlTodoSettings(credential_backend="env")  # type: ignore[call-arg]
        assert isinstance(get_credential_store(settings), EnvCredentialStore)

    def test_unknown_backend(self) -> None:
        with pytest.raises(CredentialUnavailable, match="Valid: keyring, env"):
            get_credential_store(GlTodoSettings(credential_backend="vault"))  # type: ignore[call-arg]
