from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
import logging
import tempfile

from prforge.config import GitSettings
from prforge.errors import WorkspaceError
from prforge.models import RepositoryReference
from prforge.observability import log_event
from prforge.shell import CommandError, run


LOGGER = logging.getLogger("prforge.git_ops")


@contextmanager
def acquire_workspace(
    repo: RepositoryReference, settings: GitSettings
) -> Iterator[RepositoryWorkspace]:
    with tempfile.TemporaryDirectory(prefix="prforge_") as tmp:
        workspace = RepositoryWorkspace(repo, settings, root=Path(tmp))
        try:
            yield workspace
        finally:
            log_event(
                LOGGER,
                "workspace_released",
                repo_full_name=repo.full_name,
                path=str(workspace.path),
            )


class RepositoryWorkspace:
    def __init__(self, repo: RepositoryReference, settings: GitSettings, *, root: Path) -> None:
        self.repo = repo
        self.settings = settings
        self.path = root / repo.name

    def clone(self) -> None:
        log_event(
            LOGGER,
            "workspace_cloned",
            repo_full_name=self.repo.full_name,
            path=str(self.path),
        )
        self._git("clone", ["clone", self.repo.clone_url, str(self.path)], in_checkout=False)
        if self.settings.author_name:
            self._git("config", ["config", "user.name", self.settings.author_name])
        if self.settings.author_email:
            self._git("config", ["config", "user.email", self.settings.author_email])

    def default_branch(self) -> str:
        if self.settings.base_branch:
            return self.settings.base_branch
        ref = self._git(
            "resolve default branch",
            ["symbolic-ref", "--short", "refs/remotes/origin/HEAD"],
        ).strip()
        return ref.removeprefix("origin/") or "main"

    def remote_branch_exists(self, branch: str) -> bool:
        out = self._git(
            "ls-remote",
            ["ls-remote", "--heads", "origin", branch],
            branch=branch,
        )
        return any(line.endswith(f"refs/heads/{branch}") for line in out.splitlines())

    def checkout_branch(self, branch: str, *, base: str) -> bool:
        """Check out ``branch``, resuming it from origin when it already exists.

        Returns True when an existing remote branch was resumed.
        """
        if self.remote_branch_exists(branch):
            log_event(
                LOGGER,
                "branch_resumed",
                repo_full_name=self.repo.full_name,
                branch=branch,
            )
            self._git(
                "fetch",
                ["fetch", "origin", f"refs/heads/{branch}:refs/remotes/origin/{branch}"],
                branch=branch,
            )
            self._git("checkout", ["checkout", "-B", branch, f"origin/{branch}"], branch=branch)
            return True

        log_event(
            LOGGER,
            "branch_created",
            repo_full_name=self.repo.full_name,
            branch=branch,
            base=base,
        )
        self._git("checkout", ["checkout", "-B", branch, f"origin/{base}"], branch=branch)
        return False

    def is_ahead_of(self, base: str) -> bool:
        count = self._git(
            "rev-list",
            ["rev-list", "--count", f"origin/{base}..HEAD"],
        ).strip()
        try:
            return int(count) > 0
        except ValueError:
            return False

    def list_staged_files(self) -> tuple[str, ...]:
        self._git("add", ["add", "-A"])
        diff = self._git("diff", ["diff", "--cached", "--name-only"]).strip()
        if not diff:
            return ()
        return tuple(line for line in diff.splitlines() if line.strip())

    def commit_all(self, message: str) -> tuple[str, ...]:
        staged = self.list_staged_files()
        if not staged:
            raise WorkspaceError("commit", repo=self.repo.full_name, detail="no staged changes")
        log_event(
            LOGGER,
            "git_commit",
            repo_full_name=self.repo.full_name,
            file_count=len(staged),
        )
        self._git("commit", ["commit", "-m", message])
        return staged

    def push_branch(self, branch: str) -> None:
        log_event(
            LOGGER,
            "git_push",
            repo_full_name=self.repo.full_name,
            branch=branch,
        )
        try:
            self._git("push", ["push", "-u", "origin", branch], branch=branch)
        except WorkspaceError:
            log_event(
                LOGGER,
                "git_push_failed",
                repo_full_name=self.repo.full_name,
                branch=branch,
            )
            raise

    def _git(
        self,
        operation: str,
        args: list[str],
        *,
        branch: str | None = None,
        in_checkout: bool = True,
    ) -> str:
        argv = ["git", "-C", str(self.path), *args] if in_checkout else ["git", *args]
        try:
            return run(argv, timeout_seconds=self.settings.command_timeout_seconds)
        except CommandError as exc:
            detail = exc.stderr.strip() or str(exc).splitlines()[0]
            raise WorkspaceError(
                operation, repo=self.repo.full_name, branch=branch, detail=detail
            ) from exc
