"""Settings resolution with account profile support."""

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

import tomlkit
import typer
from pydantic import SecretStr
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from gltodo.models import Account

CONFIG_PATH = Path.home() / ".config" / "gltodo" / "config.toml"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "gltodo"


class GlTodoSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GLTODO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_account: str | None = None  # profile name
    account: str = "default"  # resolved profile name, not read from the profile itself

    gitlab_url: str = "https://gitlab.com"
    credential_backend: str = "keyring"  # "keyring" | "env"
    token: SecretStr | None = None  # only read by the env backend

    cache_dir: Path = DEFAULT_CACHE_DIR

    # Fetching
    per_page: int = 100  # GitLab caps per_page at 100
    page_budget: int = 10  # pages per sync pass
    timeout: float = 30.0

    # Retry policy for transient failures
    retry_attempts: int = 5
    retry_base: float = 0.5
    retry_cap: float = 8.0
    max_rate_limit_wait: float = 60.0

    # Reconciliation
    mutation_attempt_limit: int = 5
    done_retention_days: int = 30

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Profile values arrive as init kwargs; env vars and .env must win over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    def account_handle(self) -> Account:
        return Account(name=self.account, gitlab_url=self.gitlab_url.rstrip("/"))


@lru_cache(maxsize=1)
def _load_toml() -> tomlkit.TOMLDocument:
    """Load ~/.config/gltodo/config.toml, returning empty document if missing."""
    if not CONFIG_PATH.exists():
        return tomlkit.document()
    return tomlkit.load(CONFIG_PATH.open())


def _list_profiles(config: Mapping) -> list[str]:
    # tomlkit Table implements MutableMapping but not dict, so check Mapping
    return [k for k, v in config.items() if isinstance(v, Mapping)]


def get_settings(account: str | None = None) -> GlTodoSettings:
    """Resolve the active account profile and return fully populated settings.

    Precedence (highest to lowest):
    1. account argument (--account CLI flag)
    2. GLTODO_DEFAULT_ACCOUNT env var
    3. default_account key in ~/.config/gltodo/config.toml
    4. First profile defined in ~/.config/gltodo/config.toml
    5. A profile named "default" built from env vars alone
    """
    toml_config = _load_toml()

    active = (
        account
        or os.environ.get("GLTODO_DEFAULT_ACCOUNT")
        or toml_config.get("default_account")
        or ((_profiles := _list_profiles(toml_config)) and _profiles[0] or None)
    )

    profile_defaults: dict = {}
    if active:
        if active in toml_config and isinstance(toml_config[active], Mapping):
            profile_defaults = dict(toml_config[active])
        elif account is not None or _list_profiles(toml_config):
            profiles = _list_profiles(toml_config)
            typer.echo(f"Account '{active}' not found in {CONFIG_PATH}. Available: {profiles or '(none)'}")
            raise typer.Exit(1)

    profile_defaults["account"] = str(active or "default")
    # env vars + .env always override profile defaults
    return GlTodoSettings(**profile_defaults)
