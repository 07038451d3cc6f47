"""Credential Store Adapter: personal access tokens in platform secret storage."""

import logging
import os
from abc import ABC, abstractmethod

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import SecretStr

from gltodo.errors import CredentialUnavailable
from gltodo.models import Account, Credential
from gltodo.settings import GlTodoSettings

logger = logging.getLogger(__name__)

SERVICE_NAME = "gitlab-todo-helper"


class CredentialStore(ABC):
    @abstractmethod
    def get(self, account: Account) -> Credential | None: ...

    @abstractmethod
    def store(self, credential: Credential) -> None: ...

    @abstractmethod
    def clear(self, account: Account) -> None: ...

    def require(self, account: Account) -> Credential:
        credential = self.get(account)
        if credential is None:
            raise CredentialUnavailable(f"No GitLab token stored for {account.key}. Run: gltodo login")
        return credential


class KeyringCredentialStore(CredentialStore):
    """macOS Keychain, Windows Credential Locker or Secret Service, via keyring."""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        self._service = service

    def get(self, account: Account) -> Credential | None:
        try:
            token = keyring.get_password(self._service, account.key)
        except KeyringError as exc:
            # A locked or missing backend is the same as no token: ask the user to log in
            logger.warning("Keyring lookup for %s failed: %s", account.key, exc)
            return None
        if not token:
            return None
        return Credential(account=account.key, token=SecretStr(token))

    def store(self, credential: Credential) -> None:
        try:
            keyring.set_password(self._service, credential.account, credential.token.get_secret_value())
        except KeyringError as exc:
            raise CredentialUnavailable(f"Could not write to the system keyring: {exc}") from exc
        logger.debug("Stored token for %s in keyring", credential.account)

    def clear(self, account: Account) -> None:
        try:
            keyring.delete_password(self._service, account.key)
        except PasswordDeleteError:
            logger.debug("No keyring entry for %s to delete", account.key)
        except KeyringError as exc:
            logger.warning("Could not delete keyring entry for %s: %s", account.key, exc)
        else:
            logger.info("Cleared stored token for %s", account.key)


class EnvCredentialStore(CredentialStore):
    """Read-only store for CI and headless shells: GLTODO_TOKEN, then GITLAB_TOKEN."""

    def __init__(self, settings: GlTodoSettings) -> None:
        self._token = settings.token
        self._cleared = False

    def get(self, account: Account) -> Credential | None:
        if self._cleared:
            return None
        if self._token:
            return Credential(account=account.key, token=self._token)
        raw = os.environ.get("GITLAB_TOKEN")
        if raw:
            return Credential(account=account.key, token=SecretStr(raw))
        return None

    def store(self, credential: Credential) -> None:
        raise CredentialUnavailable(
            "The env credential backend is read-only. Set GLTODO_TOKEN, or use credential_backend = \"keyring\"."
        )

    def clear(self, account: Account) -> None:
        logger.warning("Token for %s comes from the environment and cannot be cleared; unset GLTODO_TOKEN", account.key)
        self._cleared = True


def get_credential_store(settings: GlTodoSettings) -> CredentialStore:
    match settings.credential_backend:
        case "keyring":
            return KeyringCredentialStore()
        case "env":
            return EnvCredentialStore(settings)
        case _:
            raise CredentialUnavailable(
                f"Unknown credential_backend '{settings.credential_backend}'. Valid: keyring, env"
            )
