from __future__ import annotations

from pathlib import Path

import pytest

from prforge.config import GitSettings
from prforge.errors import WorkspaceError
from prforge.git_ops import RepositoryWorkspace, acquire_workspace
from prforge.models import RepositoryReference
from prforge.observability import configure_logging
from prforge.shell import CommandError


REPO = RepositoryReference(
    host="github.com",
    organisation="o",
    name="env",
    clone_url="https://github.com/o/env.git",
)


class FakeGit:
    def __init__(self, responses: dict[str, str] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.responses = responses or {}
        self.failures: dict[str, str] = {}

    def __call__(self, cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        self.calls.append(cmd)
        subcommand = cmd[3] if cmd[1] == "-C" else cmd[1]
        if subcommand in self.failures:
            raise CommandError("Command failed", returncode=1, stderr=self.failures[subcommand])
        return self.responses.get(subcommand, "")


def _workspace(tmp_path: Path, **settings: object) -> RepositoryWorkspace:
    return RepositoryWorkspace(REPO, GitSettings(**settings), root=tmp_path)  # type: ignore[arg-type]


def test_acquire_workspace_removes_directory_on_error() -> None:
    seen: list[Path] = []
    with pytest.raises(RuntimeError, match="boom"):
        with acquire_workspace(REPO, GitSettings()) as workspace:
            seen.append(workspace.path)
            workspace.path.mkdir(parents=True)
            assert workspace.path.name == "env"
            raise RuntimeError("boom")

    assert seen
    assert not seen[0].parent.exists()


def test_clone_configures_author(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGit()
    monkeypatch.setattr("prforge.git_ops.run", fake)
    workspace = _workspace(tmp_path, author_name="bot", author_email="bot@example.com")

    workspace.clone()

    path = str(tmp_path / "env")
    assert fake.calls == [
        ["git", "clone", REPO.clone_url, path],
        ["git", "-C", path, "config", "user.name", "bot"],
        ["git", "-C", path, "config", "user.email", "bot@example.com"],
    ]


def test_default_branch_prefers_settings_then_remote_head(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    fake = FakeGit({"symbolic-ref": "origin/develop\n"})
    monkeypatch.setattr("prforge.git_ops.run", fake)

    assert _workspace(tmp_path, base_branch="main").default_branch() == "main"
    assert fake.calls == []
    assert _workspace(tmp_path).default_branch() == "develop"


def test_checkout_branch_resumes_existing_remote_branch(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    fake = FakeGit({"ls-remote": "abc123\trefs/heads/add-app-app-2.0.0\n"})
    monkeypatch.setattr("prforge.git_ops.run", fake)

    resumed = _workspace(tmp_path).checkout_branch("add-app-app-2.0.0", base="main")

    assert resumed is True
    assert fake.calls[-1][3:] == ["checkout", "-B", "add-app-app-2.0.0", "origin/add-app-app-2.0.0"]


def test_checkout_branch_creates_from_base(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGit({"ls-remote": ""})
    monkeypatch.setattr("prforge.git_ops.run", fake)

    resumed = _workspace(tmp_path).checkout_branch("bump-regex-docs-1.0", base="main")

    assert resumed is False
    assert fake.calls[-1][3:] == ["checkout", "-B", "bump-regex-docs-1.0", "origin/main"]


def test_commit_all_returns_staged_files(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeGit({"diff": "config.toml\nvalues.yaml\n"})
    monkeypatch.setattr("prforge.git_ops.run", fake)

    staged = _workspace(tmp_path).commit_all("Add app 2.0.0")

    assert staged == ("config.toml", "values.yaml")
    assert fake.calls[-1][3:] == ["commit", "-m", "Add app 2.0.0"]


def test_commit_all_without_changes_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("prforge.git_ops.run", FakeGit({"diff": ""}))

    with pytest.raises(WorkspaceError, match="no staged changes"):
        _workspace(tmp_path).commit_all("msg")


def test_is_ahead_of_counts_commits(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("prforge.git_ops.run", FakeGit({"rev-list": "2\n"}))
    assert _workspace(tmp_path).is_ahead_of("main") is True

    monkeypatch.setattr("prforge.git_ops.run", FakeGit({"rev-list": "0\n"}))
    assert _workspace(tmp_path).is_ahead_of("main") is False


def test_push_failure_carries_repo_and_branch(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    fake = FakeGit()
    fake.failures["push"] = "rejected: non-fast-forward"
    monkeypatch.setattr("prforge.git_ops.run", fake)
    configure_logging(verbose="low")

    with pytest.raises(WorkspaceError) as excinfo:
        _workspace(tmp_path).push_branch("bump-x")

    assert excinfo.value.repo == "o/env"
    assert excinfo.value.branch == "bump-x"
    assert "rejected: non-fast-forward" in str(excinfo.value)
    assert "event=git_push_failed" in capsys.readouterr().err
