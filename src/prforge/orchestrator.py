from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass
import logging
from pathlib import Path
import re
import threading
import time

from prforge.config import AppConfig, GitSettings
from prforge.errors import MergeWaitTimeout, OperationCancelled, TransientProviderError
from prforge.git_ops import RepositoryWorkspace, acquire_workspace
from prforge.models import (
    MergeStatus,
    PullRequestHandle,
    PullRequestSpec,
    RepositoryReference,
)
from prforge.mutations import MutationStrategy
from prforge.observability import log_event, log_warning
from prforge.process_lock import branch_lock
from prforge.providers import GitProviderGateway


LOGGER = logging.getLogger("prforge.orchestrator")
_REF_INVALID = re.compile(r"[^A-Za-z0-9._-]+")
_REPEATED_DOTS = re.compile(r"\.{2,}")
_MAX_POLL_INTERVAL_SECONDS = 60.0

WorkspaceFactory = Callable[
    [RepositoryReference, GitSettings], AbstractContextManager[RepositoryWorkspace]
]


@dataclass(frozen=True)
class BranchScheme:
    prefix: str

    def branch_name(self, subject: str, version: str) -> str:
        return _sanitize_ref(f"{self.prefix}-{subject}-{version}")


@dataclass(frozen=True)
class PullRequestTemplate:
    title: str
    body: str
    subject: str
    version: str
    labels: tuple[str, ...] = ()
    base_branch: str | None = None
    source_repo_url: str | None = None


class PullRequestOrchestrator:
    """Clone, mutate, commit, push, then open or update the pull request for one change."""

    def __init__(
        self,
        config: AppConfig,
        gateway: GitProviderGateway,
        *,
        workspace_factory: WorkspaceFactory = acquire_workspace,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._workspace_factory = workspace_factory

    def execute(
        self,
        repo: RepositoryReference,
        scheme: BranchScheme,
        mutation: MutationStrategy,
        template: PullRequestTemplate,
        *,
        cancel: threading.Event | None = None,
    ) -> PullRequestHandle | None:
        """Returns None when the mutation left nothing to propose."""
        branch = scheme.branch_name(template.subject, template.version)
        with ExitStack() as stack:
            lock_dir = self._config.git.lock_dir
            if lock_dir is not None:
                stack.enter_context(branch_lock(lock_dir=lock_dir, repo=repo, branch=branch))
            _raise_if_cancelled(cancel, "clone")
            workspace = stack.enter_context(self._workspace_factory(repo, self._config.git))
            return self._run_in_workspace(
                repo, workspace, branch, mutation, template, cancel=cancel
            )

    def _run_in_workspace(
        self,
        repo: RepositoryReference,
        workspace: RepositoryWorkspace,
        branch: str,
        mutation: MutationStrategy,
        template: PullRequestTemplate,
        *,
        cancel: threading.Event | None,
    ) -> PullRequestHandle | None:
        workspace.clone()
        _raise_if_cancelled(cancel, "checkout")
        base = template.base_branch or workspace.default_branch()
        resumed = workspace.checkout_branch(branch, base=base)

        _raise_if_cancelled(cancel, "mutation")
        outcome = mutation.apply(Path(workspace.path))

        _raise_if_cancelled(cancel, "commit")
        if outcome.has_diff and workspace.list_staged_files():
            workspace.commit_all(template.title)
            _raise_if_cancelled(cancel, "push")
            workspace.push_branch(branch)
        elif not (resumed and workspace.is_ahead_of(base)):
            log_event(
                LOGGER,
                "mutation_noop",
                repo_full_name=repo.full_name,
                branch=branch,
                resumed=resumed,
            )
            return None

        _raise_if_cancelled(cancel, "pull request")
        spec = self._pull_request_spec(branch, base, template)
        existing = self._gateway.find_open_pull_request(repo, head=branch, base=base)
        if existing is not None:
            handle = self._gateway.update_pull_request(repo, existing, spec)
        else:
            handle = self._gateway.create_pull_request(repo, spec)
        log_event(
            LOGGER,
            "change_proposed",
            repo_full_name=repo.full_name,
            branch=branch,
            pr_number=handle.number,
            pr_url=handle.url,
            updated=existing is not None,
            changed_files=outcome.changed_files,
        )
        return handle

    def _pull_request_spec(
        self, branch: str, base: str, template: PullRequestTemplate
    ) -> PullRequestSpec:
        body = template.body
        if template.source_repo_url:
            link = f"Source: {template.source_repo_url}"
            body = f"{body}\n\n{link}" if body else link
        else:
            log_warning(
                LOGGER,
                "source_repo_missing",
                branch=branch,
                detail="srcRepo is not provided, PR will not be correctly linked",
            )
        return PullRequestSpec(
            branch=branch,
            base=base,
            title=template.title,
            body=body,
            labels=template.labels,
            source_repo_url=template.source_repo_url,
        )

    def await_merge(
        self,
        repo: RepositoryReference,
        handle: PullRequestHandle,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = 10.0,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> MergeStatus:
        """Poll until the pull request is merged or closed.

        Transient provider errors back off and keep polling; any other provider
        error propagates. Raises MergeWaitTimeout once ``timeout_seconds`` elapse.
        """
        deadline = clock() + timeout_seconds
        delay = poll_interval_seconds
        while True:
            _raise_if_cancelled(cancel, "merge status poll")
            try:
                status = self._gateway.get_merge_status(repo, handle)
            except TransientProviderError as exc:
                log_warning(
                    LOGGER,
                    "merge_status_poll_failed",
                    repo_full_name=repo.full_name,
                    pr_number=handle.number,
                    error=str(exc),
                )
                delay = min(delay * 2, _MAX_POLL_INTERVAL_SECONDS)
            else:
                delay = poll_interval_seconds
                if status.state != "open":
                    log_event(
                        LOGGER,
                        "merge_wait_finished",
                        repo_full_name=repo.full_name,
                        pr_number=handle.number,
                        state=status.state,
                        build_state=status.build_state,
                    )
                    return status

            remaining = deadline - clock()
            if remaining <= 0:
                raise MergeWaitTimeout(
                    "await merge",
                    repo=repo.full_name,
                    detail=f"pull request #{handle.number} still open after {timeout_seconds}s",
                )
            (sleep or time.sleep)(min(delay, remaining))


def _raise_if_cancelled(cancel: threading.Event | None, step: str) -> None:
    if cancel is not None and cancel.is_set():
        log_event(LOGGER, "operation_cancelled", step=step)
        raise OperationCancelled(step)


def _sanitize_ref(raw: str) -> str:
    cleaned = _REPEATED_DOTS.sub(".", _REF_INVALID.sub("-", raw)).strip(".-")
    if cleaned.endswith(".lock"):
        cleaned = f"{cleaned[: -len('.lock')]}-lock"
    return cleaned or "prforge"
