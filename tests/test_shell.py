from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from prforge.observability import configure_logging
from prforge.shell import CommandError, _preview, run


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["git"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["git", "status"], cwd=tmp_path, input_text="hi", timeout_seconds=5)

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["timeout"] == 5


def test_run_failure_raises_with_stderr(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["git"], returncode=128, stdout="", stderr="fatal")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed") as excinfo:
        run(["git", "push"])

    assert excinfo.value.returncode == 128
    assert excinfo.value.stderr == "fatal"
    stderr = capsys.readouterr().err
    assert "event=command_failed command=git push exit_code=128" in stderr


def test_run_unchecked_returns_stdout_of_failed_command(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["gh"], returncode=1, stdout="HTTP/2.0 404", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert run(["gh", "api"], check=False) == "HTTP/2.0 404"


def test_run_timeout_raises_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        raise subprocess.TimeoutExpired(cmd="git clone", timeout=float(kwargs["timeout"]))

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="timed out after 3s") as excinfo:
        run(["git", "clone"], timeout_seconds=3)
    assert excinfo.value.returncode is None


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"
