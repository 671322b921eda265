from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from prforge.models import ProviderKind


DEFAULT_LABEL_PREFIX = "PR_LABELS"
DEFAULT_BRANCH_ENV = "BRANCH_NAME"
_PROVIDER_KINDS: tuple[ProviderKind, ...] = ("github", "bitbucket_server")


@dataclass(frozen=True)
class GitSettings:
    author_name: str | None = None
    author_email: str | None = None
    base_branch: str | None = None
    branch_prefix: str = "bump"
    lock_dir: Path | None = None
    command_timeout_seconds: int = 600


@dataclass(frozen=True)
class LabelSettings:
    prefix: str = DEFAULT_LABEL_PREFIX
    branch_env: str = DEFAULT_BRANCH_ENV


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    backoff_seconds: float = 2.0


@dataclass(frozen=True)
class ProviderConfig:
    provider_id: str
    kind: ProviderKind
    host: str
    api_url: str | None = None
    username_env: str | None = None
    token_env: str | None = None

    @property
    def effective_api_url(self) -> str:
        if self.api_url:
            return self.api_url.rstrip("/")
        return f"https://{self.host}"


@dataclass(frozen=True)
class VaultConfig:
    address: str
    mount: str = "secret"
    token_env: str = "VAULT_TOKEN"


@dataclass(frozen=True)
class AppConfig:
    git: GitSettings
    labels: LabelSettings
    retry: RetrySettings
    providers: tuple[ProviderConfig, ...] = ()
    vault: VaultConfig | None = None
    log_dir: Path | None = None

    def provider_for_host(self, host: str) -> ProviderConfig | None:
        normalized = host.strip().lower()
        for provider in self.providers:
            if provider.host == normalized:
                return provider
        if normalized == "github.com":
            return ProviderConfig(provider_id="github", kind="github", host="github.com")
        return None


class ConfigError(ValueError):
    pass


def default_config() -> AppConfig:
    return AppConfig(git=GitSettings(), labels=LabelSettings(), retry=RetrySettings())


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    git_data = _optional_table(data, "git") or {}
    labels_data = _optional_table(data, "labels") or {}
    retry_data = _optional_table(data, "retry") or {}
    vault_data = _optional_table(data, "vault")
    provider_data = _optional_table(data, "provider") or {}
    logging_data = _optional_table(data, "logging") or {}

    git = GitSettings(
        author_name=_optional_str(git_data, "author_name"),
        author_email=_optional_str(git_data, "author_email"),
        base_branch=_optional_str(git_data, "base_branch"),
        branch_prefix=_str_with_default(git_data, "branch_prefix", "bump"),
        lock_dir=_optional_path(git_data, "lock_dir"),
        command_timeout_seconds=_int_with_default(git_data, "command_timeout_seconds", 600),
    )
    if git.command_timeout_seconds < 1:
        raise ConfigError("git.command_timeout_seconds must be >= 1")

    labels = LabelSettings(
        prefix=_str_with_default(labels_data, "prefix", DEFAULT_LABEL_PREFIX),
        branch_env=_str_with_default(labels_data, "branch_env", DEFAULT_BRANCH_ENV),
    )

    retry = RetrySettings(
        max_attempts=_int_with_default(retry_data, "max_attempts", 3),
        backoff_seconds=_float_with_default(retry_data, "backoff_seconds", 2.0),
    )
    if retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be >= 1")
    if retry.backoff_seconds < 0:
        raise ConfigError("retry.backoff_seconds must be >= 0")

    vault: VaultConfig | None = None
    if vault_data is not None:
        vault = VaultConfig(
            address=_require_str(vault_data, "address").rstrip("/"),
            mount=_str_with_default(vault_data, "mount", "secret").strip("/"),
            token_env=_str_with_default(vault_data, "token_env", "VAULT_TOKEN"),
        )

    return AppConfig(
        git=git,
        labels=labels,
        retry=retry,
        providers=_load_provider_configs(provider_data),
        vault=vault,
        log_dir=_optional_path(logging_data, "log_dir"),
    )


def load_config_if_present(path: Path) -> AppConfig:
    if not path.exists():
        return default_config()
    return load_config(path)


def _load_provider_configs(provider_data: dict[str, object]) -> tuple[ProviderConfig, ...]:
    providers: list[ProviderConfig] = []
    for provider_id, raw_value in sorted(provider_data.items()):
        table = _require_sub_table(raw_value, table_name=f"[provider.{provider_id}]")
        kind = _parse_provider_kind(table.get("kind"), provider_id=provider_id)
        providers.append(
            ProviderConfig(
                provider_id=provider_id,
                kind=kind,
                host=_require_str(table, "host").strip().lower(),
                api_url=_optional_str(table, "api_url"),
                username_env=_optional_str(table, "username_env"),
                token_env=_optional_str(table, "token_env"),
            )
        )
    _ensure_unique_hosts(providers)
    return tuple(providers)


def _parse_provider_kind(value: object, *, provider_id: str) -> ProviderKind:
    expected = ", ".join(_PROVIDER_KINDS)
    if not isinstance(value, str):
        raise ConfigError(f"provider.{provider_id}.kind must be one of: {expected}")
    normalized = value.strip().lower()
    if normalized not in _PROVIDER_KINDS:
        raise ConfigError(f"provider.{provider_id}.kind must be one of: {expected}")
    return cast(ProviderKind, normalized)


def _ensure_unique_hosts(providers: list[ProviderConfig]) -> None:
    seen: dict[str, str] = {}
    for provider in providers:
        existing_id = seen.get(provider.host)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate provider host {provider.host!r} across provider ids "
                f"{existing_id!r} and {provider.provider_id!r}"
            )
        seen[provider.host] = provider.provider_id


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_sub_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
