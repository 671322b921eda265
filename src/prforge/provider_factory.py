from __future__ import annotations

from collections.abc import Callable, Mapping
import getpass
import logging
import os

from prforge.bitbucket_gateway import BitbucketServerGateway
from prforge.config import AppConfig, ProviderConfig
from prforge.errors import MissingOption, ProviderNotFound
from prforge.github_gateway import GitHubGateway
from prforge.models import RepositoryReference
from prforge.observability import log_event
from prforge.providers import GitProviderGateway


LOGGER = logging.getLogger("prforge.provider_factory")


def resolve_provider(
    repo: RepositoryReference,
    config: AppConfig,
    *,
    batch_mode: bool = True,
    environ: Mapping[str, str] | None = None,
    prompt: Callable[[str], str] = getpass.getpass,
) -> GitProviderGateway:
    """Pick the hosting backend for ``repo`` once, from its host name."""
    provider = config.provider_for_host(repo.host)
    if provider is None:
        raise ProviderNotFound(
            f"No Git provider is configured for host {repo.host!r} ({repo.full_name})"
        )
    log_event(
        LOGGER,
        "provider_resolved",
        host=repo.host,
        kind=provider.kind,
        provider_id=provider.provider_id,
    )
    if provider.kind == "github":
        return GitHubGateway(retry=config.retry)

    env = os.environ if environ is None else environ
    username, token = _provider_credentials(
        provider, env=env, batch_mode=batch_mode, prompt=prompt
    )
    return BitbucketServerGateway(
        api_url=provider.effective_api_url,
        username=username,
        token=token,
        retry=config.retry,
    )


def _provider_credentials(
    provider: ProviderConfig,
    *,
    env: Mapping[str, str],
    batch_mode: bool,
    prompt: Callable[[str], str],
) -> tuple[str | None, str]:
    username = env.get(provider.username_env) if provider.username_env else None
    token = env.get(provider.token_env) if provider.token_env else None
    if token:
        return username, token
    if batch_mode:
        raise MissingOption(provider.token_env or f"provider.{provider.provider_id}.token_env")
    return username, prompt(f"API token for {provider.host}: ")
