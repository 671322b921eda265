from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
import logging
from pathlib import Path
import re
from typing import TextIO

from prforge.config import AppConfig
from prforge.errors import MissingOption
from prforge.git_url import resolve_repository
from prforge.models import PullRequest, RepositoryReference
from prforge.observability import log_event, log_warning
from prforge.provider_factory import resolve_provider
from prforge.providers import GitProviderGateway


LOGGER = logging.getLogger("prforge.labels")
_LABEL_INVALID = re.compile(r"[^a-zA-Z0-9]+")
_PR_PREFIX = "PR-"

ProviderFactory = Callable[..., GitProviderGateway]


@dataclass(frozen=True)
class PullRequestNumber:
    raw: str
    number: int | None

    @property
    def identifier(self) -> int | str:
        return self.number if self.number is not None else self.raw


@dataclass(frozen=True)
class LabelOptions:
    pull_request: str | None
    prefix: str
    git_url: str | None = None
    batch_mode: bool = False
    branch_name: str | None = None


def normalize_label(name: str) -> str:
    return _LABEL_INVALID.sub("_", name).upper()


def resolve_pr_number(explicit: str | None, branch_name: str | None) -> PullRequestNumber:
    """Explicit value first, then the CI branch identifier (``PR-<n>``)."""
    source = "flag"
    candidate = (explicit or "").strip()
    if not candidate:
        source = "branch"
        candidate = (branch_name or "").strip()
    if not candidate:
        raise MissingOption("pr")

    raw = candidate.removeprefix(_PR_PREFIX)
    try:
        number: int | None = int(raw)
    except ValueError:
        log_warning(LOGGER, "pr_number_not_numeric", raw=raw, source=source)
        number = None
    return PullRequestNumber(raw=raw, number=number)


def extract_labels(pr: PullRequest, prefix: str) -> Iterator[tuple[str, str]]:
    for label in pr.labels:
        yield f"{prefix}_{normalize_label(label.name)}", label.name


def render_label_line(key: str, value: str) -> str:
    return f"{key}='{value}'"


def print_pr_labels(
    options: LabelOptions,
    config: AppConfig,
    *,
    cwd: Path,
    out: TextIO,
    provider_factory: ProviderFactory = resolve_provider,
) -> int:
    """Write one ``KEY='label'`` line per label of the pull request; returns the count."""
    pr_number = resolve_pr_number(options.pull_request, options.branch_name)
    repo: RepositoryReference = resolve_repository(options.git_url, cwd=cwd)
    gateway = provider_factory(repo, config, batch_mode=options.batch_mode)
    pr = gateway.get_pull_request(repo, pr_number.identifier)
    pr = replace(pr, labels=gateway.list_labels(pr))

    count = 0
    for key, value in extract_labels(pr, options.prefix):
        out.write(render_label_line(key, value) + "\n")
        out.flush()
        count += 1
    log_event(
        LOGGER,
        "labels_printed",
        repo_full_name=repo.full_name,
        pr_number=pr.number,
        count=count,
    )
    return count
