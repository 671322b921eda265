from __future__ import annotations

from dataclasses import replace

import pytest

from prforge.bitbucket_gateway import BitbucketServerGateway
from prforge.config import AppConfig, ProviderConfig, default_config
from prforge.errors import MissingOption, ProviderNotFound
from prforge.github_gateway import GitHubGateway
from prforge.models import RepositoryReference
from prforge.provider_factory import resolve_provider


STASH = ProviderConfig(
    provider_id="stash",
    kind="bitbucket_server",
    host="stash.example.com",
    username_env="STASH_USERNAME",
    token_env="STASH_PASSWORD",
)


def _repo(host: str) -> RepositoryReference:
    return RepositoryReference(host=host, organisation="o", name="r", clone_url=f"https://{host}/o/r")


def _config_with_stash() -> AppConfig:
    return replace(default_config(), providers=(STASH,))


def test_github_host_resolves_without_configuration() -> None:
    gateway = resolve_provider(_repo("github.com"), default_config(), environ={})

    assert isinstance(gateway, GitHubGateway)
    assert gateway.kind == "github"


def test_unknown_host_raises_provider_not_found() -> None:
    with pytest.raises(ProviderNotFound, match="gitlab.example.com"):
        resolve_provider(_repo("gitlab.example.com"), default_config(), environ={})


def test_bitbucket_reads_credentials_from_environment() -> None:
    gateway = resolve_provider(
        _repo("stash.example.com"),
        _config_with_stash(),
        environ={"STASH_USERNAME": "jenkins", "STASH_PASSWORD": "pw"},
    )

    assert isinstance(gateway, BitbucketServerGateway)
    assert gateway.kind == "bitbucket_server"


def test_batch_mode_fails_when_token_missing() -> None:
    def no_prompt(message: str) -> str:
        raise AssertionError(f"prompted in batch mode: {message}")

    with pytest.raises(MissingOption, match="--STASH_PASSWORD"):
        resolve_provider(
            _repo("stash.example.com"),
            _config_with_stash(),
            batch_mode=True,
            environ={},
            prompt=no_prompt,
        )


def test_interactive_mode_prompts_for_missing_token() -> None:
    prompts: list[str] = []

    def fake_prompt(message: str) -> str:
        prompts.append(message)
        return "typed"

    gateway = resolve_provider(
        _repo("stash.example.com"),
        _config_with_stash(),
        batch_mode=False,
        environ={},
        prompt=fake_prompt,
    )

    assert isinstance(gateway, BitbucketServerGateway)
    assert prompts == ["API token for stash.example.com: "]
