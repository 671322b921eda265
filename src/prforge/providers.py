from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
import logging
import time
from typing import TypeVar

from prforge.config import RetrySettings
from prforge.errors import TransientProviderError
from prforge.models import (
    Label,
    MergeStatus,
    PullRequest,
    PullRequestHandle,
    PullRequestSpec,
    RepositoryReference,
)
from prforge.observability import log_event


LOGGER = logging.getLogger("prforge.providers")
T = TypeVar("T")


class GitProviderGateway(ABC):
    """Capability interface over a git hosting backend."""

    kind: str

    @abstractmethod
    def get_pull_request(self, repo: RepositoryReference, number: int | str) -> PullRequest:
        """Fetch a pull request by number; string identifiers are passed through."""

    @abstractmethod
    def list_labels(self, pr: PullRequest) -> tuple[Label, ...]:
        """Return the label set of an already-fetched pull request."""

    @abstractmethod
    def find_open_pull_request(
        self, repo: RepositoryReference, *, head: str, base: str
    ) -> PullRequest | None:
        """Return the open pull request from ``head`` into ``base``, if any."""

    @abstractmethod
    def create_pull_request(
        self, repo: RepositoryReference, spec: PullRequestSpec
    ) -> PullRequestHandle:
        """Open a new pull request."""

    @abstractmethod
    def update_pull_request(
        self, repo: RepositoryReference, existing: PullRequest, spec: PullRequestSpec
    ) -> PullRequestHandle:
        """Update title, body and labels of an existing pull request."""

    @abstractmethod
    def get_merge_status(
        self, repo: RepositoryReference, handle: PullRequestHandle
    ) -> MergeStatus:
        """Read merge state and build state."""


def with_retries(
    operation: str,
    call: Callable[[], T],
    *,
    retry: RetrySettings,
    sleep: Callable[[float], None] | None = None,
) -> T:
    attempt = 1
    while True:
        try:
            return call()
        except TransientProviderError as exc:
            if attempt >= retry.max_attempts:
                raise
            delay = retry.backoff_seconds * (2 ** (attempt - 1))
            log_event(
                LOGGER,
                "provider_retry",
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                status_code=exc.status_code,
            )
            (sleep or time.sleep)(delay)
            attempt += 1
