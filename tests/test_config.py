from __future__ import annotations

from pathlib import Path

import pytest

from prforge import config
from prforge.config import ConfigError


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_reads_all_tables(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "prforge.toml",
        """
[git]
author_name = "prforge"
author_email = "prforge@example.com"
base_branch = "main"
branch_prefix = "chore"
lock_dir = "~/locks"
command_timeout_seconds = 30

[logging]
log_dir = "/var/log/prforge"

[labels]
prefix = "LABELS"
branch_env = "CHANGE_ID"

[retry]
max_attempts = 5
backoff_seconds = 1

[provider.stash]
kind = "bitbucket_server"
host = "Stash.Example.com"
api_url = "https://stash.example.com/"
username_env = "STASH_USERNAME"
token_env = "STASH_PASSWORD"

[vault]
address = "https://vault.example.com/"
mount = "/kv/"
""",
    )

    loaded = config.load_config(cfg_path)

    assert loaded.git.author_name == "prforge"
    assert loaded.git.base_branch == "main"
    assert loaded.git.branch_prefix == "chore"
    assert loaded.git.lock_dir == Path("~/locks").expanduser()
    assert loaded.git.command_timeout_seconds == 30
    assert loaded.log_dir == Path("/var/log/prforge")
    assert loaded.labels.prefix == "LABELS"
    assert loaded.labels.branch_env == "CHANGE_ID"
    assert loaded.retry.max_attempts == 5
    assert loaded.retry.backoff_seconds == 1.0
    (provider,) = loaded.providers
    assert provider.provider_id == "stash"
    assert provider.kind == "bitbucket_server"
    assert provider.host == "stash.example.com"
    assert provider.effective_api_url == "https://stash.example.com"
    assert loaded.vault is not None
    assert loaded.vault.address == "https://vault.example.com"
    assert loaded.vault.mount == "kv"
    assert loaded.vault.token_env == "VAULT_TOKEN"


def test_load_config_applies_defaults_for_empty_file(tmp_path: Path) -> None:
    loaded = config.load_config(_write(tmp_path / "prforge.toml", ""))

    assert loaded == config.default_config()
    assert loaded.labels.prefix == config.DEFAULT_LABEL_PREFIX == "PR_LABELS"
    assert loaded.labels.branch_env == "BRANCH_NAME"
    assert loaded.git.lock_dir is None
    assert loaded.vault is None


def test_load_config_if_present_falls_back_to_defaults(tmp_path: Path) -> None:
    assert config.load_config_if_present(tmp_path / "missing.toml") == config.default_config()


def test_provider_for_host_defaults_github_and_rejects_unknown() -> None:
    cfg = config.default_config()

    github = cfg.provider_for_host("GitHub.com")
    assert github is not None
    assert github.kind == "github"
    assert cfg.provider_for_host("gitlab.example.com") is None


def test_provider_effective_api_url_defaults_to_host() -> None:
    provider = config.ProviderConfig(provider_id="s", kind="bitbucket_server", host="stash.io")
    assert provider.effective_api_url == "https://stash.io"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('[provider.x]\nkind = "gitlab"\nhost = "h"\n', "provider.x.kind must be one of"),
        ('[provider.x]\nkind = "github"\n', "host is required"),
        (
            '[provider.a]\nkind = "github"\nhost = "h"\n[provider.b]\nkind = "github"\nhost = "H"\n',
            "Duplicate provider host",
        ),
        ("[retry]\nmax_attempts = 0\n", "retry.max_attempts must be >= 1"),
        ("[retry]\nbackoff_seconds = -1\n", "retry.backoff_seconds must be >= 0"),
        ("[retry]\nmax_attempts = true\n", "max_attempts must be an integer"),
        ("[git]\ncommand_timeout_seconds = 0\n", "command_timeout_seconds must be >= 1"),
        ('[git]\nbase_branch = ""\n', "base_branch must be a non-empty string"),
        ('git = "main"\n', r"\[git\] must be a TOML table"),
        ("[vault]\nmount = \"kv\"\n", "address is required"),
        ('provider = { x = "y" }\n', r"\[provider.x\] must be a TOML table"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, content: str, message: str) -> None:
    cfg_path = _write(tmp_path / "prforge.toml", content)
    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)
