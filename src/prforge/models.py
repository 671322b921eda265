from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


MergeState = Literal["open", "merged", "closed"]
BuildState = Literal["pending", "success", "failure", "unknown"]
ProviderKind = Literal["github", "bitbucket_server"]


@dataclass(frozen=True)
class RepositoryReference:
    host: str
    organisation: str
    name: str
    clone_url: str

    @property
    def full_name(self) -> str:
        return f"{self.organisation}/{self.name}"


@dataclass(frozen=True)
class Label:
    name: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    body: str
    html_url: str
    head: str
    base: str
    state: MergeState
    labels: tuple[Label, ...] = ()
    head_sha: str = ""
    version: int | None = None


@dataclass(frozen=True)
class PullRequestSpec:
    branch: str
    base: str
    title: str
    body: str
    labels: tuple[str, ...] = ()
    source_repo_url: str | None = None


@dataclass(frozen=True)
class PullRequestHandle:
    number: int
    url: str
    merge_state: MergeState = "open"


@dataclass(frozen=True)
class MergeStatus:
    state: MergeState
    build_state: BuildState

    @property
    def merged(self) -> bool:
        return self.state == "merged"


@dataclass(frozen=True)
class MutationOutcome:
    changed_files: tuple[str, ...] = ()

    @property
    def has_diff(self) -> bool:
        return bool(self.changed_files)


@dataclass(frozen=True)
class GeneratedSecret:
    name: str
    key: str
    value: str = field(repr=False)
