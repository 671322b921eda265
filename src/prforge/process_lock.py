from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import logging
import os
from pathlib import Path
import re
import secrets
from typing import Iterator

from prforge.errors import PrForgeError
from prforge.models import RepositoryReference
from prforge.observability import log_event


LOGGER = logging.getLogger("prforge.process_lock")
_SLUG_INVALID = re.compile(r"[^A-Za-z0-9._-]+")


class ProcessLockError(PrForgeError):
    """Raised when another process already owns the lock for a branch."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    branch: str | None
    started_at: str | None
    token: str | None


def lock_path_for(lock_dir: Path, repo: RepositoryReference, branch: str) -> Path:
    parts = (repo.host, repo.organisation, repo.name, branch)
    slug = "__".join(_SLUG_INVALID.sub("-", part).strip("-") for part in parts)
    return lock_dir / f"{slug}.lock"


@contextmanager
def branch_lock(*, lock_dir: Path, repo: RepositoryReference, branch: str) -> Iterator[Path]:
    """Serialize invocations that would push the same branch of the same repository."""
    lock = _BranchLock(lock_path=lock_path_for(lock_dir, repo, branch), branch=branch)
    lock.acquire()
    log_event(LOGGER, "branch_lock_acquired", repo_full_name=repo.full_name, branch=branch)
    try:
        yield lock.path
    finally:
        lock.release()


class _BranchLock:
    def __init__(self, *, lock_path: Path, branch: str) -> None:
        self.path = lock_path
        self._branch = branch
        self._inode: int | None = None
        self._token: str | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_if_owner_dead():
                    continue
                raise ProcessLockError(self._held_message()) from None

            token = secrets.token_hex(16)
            try:
                self._inode = os.fstat(fd).st_ino
                payload = {
                    "pid": os.getpid(),
                    "branch": self._branch,
                    "started_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "token": token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
            except OSError:
                self._inode = None
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = token
            return

        raise ProcessLockError(self._held_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            current = self.path.stat()
        except FileNotFoundError:
            return
        # Someone replaced the file after a stale-lock cleanup; it is not ours.
        if current.st_ino != inode or _read_owner(self.path).token != token:
            return
        self.path.unlink(missing_ok=True)

    def _clear_if_owner_dead(self) -> bool:
        owner = _read_owner(self.path)
        if owner.pid is None or owner.pid == os.getpid() or _pid_is_running(owner.pid):
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        except OSError:
            return False
        log_event(LOGGER, "branch_lock_stale_cleared", path=self.path, owner_pid=owner.pid)
        return True

    def _held_message(self) -> str:
        owner = _read_owner(self.path)
        detail = f" by pid={owner.pid}" if owner.pid is not None else ""
        return (
            f"Branch {self._branch} is already being updated{detail}. "
            f"Lock file: {self.path}. Remove it if no prforge process is running."
        )


def _read_owner(lock_path: Path) -> _LockOwner:
    empty = _LockOwner(pid=None, branch=None, started_at=None, token=None)
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return empty
    if not text:
        return empty
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return empty
    if not isinstance(payload, dict):
        return empty
    pid = payload.get("pid")
    branch = payload.get("branch")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return _LockOwner(
        pid=pid if isinstance(pid, int) else None,
        branch=branch if isinstance(branch, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
