from __future__ import annotations

from pathlib import Path
import re
from urllib.parse import urlparse

from prforge.errors import ProviderNotFound
from prforge.models import RepositoryReference
from prforge.shell import CommandError, run


_SCP_LIKE = re.compile(r"^(?:[A-Za-z0-9._-]+@)?(?P<host>[A-Za-z0-9.-]+):(?!//)(?P<path>.+)$")
_URL_SCHEMES = frozenset({"http", "https", "ssh", "git"})


def parse_git_url(url: str) -> RepositoryReference:
    """Parse https, ssh and scp-style clone URLs into a repository reference.

    Bitbucket Server clone URLs carry an extra ``scm`` segment
    (``https://host/scm/PROJ/repo.git``); it is dropped so the project key
    becomes the organisation. Nested groups keep every segment but the last.
    """
    candidate = url.strip()
    if not candidate:
        raise ProviderNotFound("Unable to parse an empty git URL")

    host: str | None
    path: str
    scp_match = _SCP_LIKE.match(candidate)
    if scp_match is not None and "://" not in candidate:
        host = scp_match.group("host")
        path = scp_match.group("path")
    else:
        parsed = urlparse(candidate)
        if parsed.scheme not in _URL_SCHEMES:
            raise ProviderNotFound(f"Unsupported git URL scheme in {candidate!r}")
        host = parsed.hostname
        path = parsed.path

    if not host:
        raise ProviderNotFound(f"Unable to determine host from git URL {candidate!r}")

    segments = [segment for segment in path.strip("/").split("/") if segment]
    if segments and segments[0] == "scm":
        segments = segments[1:]
    if len(segments) < 2:
        raise ProviderNotFound(
            f"Git URL {candidate!r} must include an organisation and a repository name"
        )
    name = segments[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not name:
        raise ProviderNotFound(f"Git URL {candidate!r} has an empty repository name")

    return RepositoryReference(
        host=host.lower(),
        organisation="/".join(segments[:-1]),
        name=name,
        clone_url=candidate,
    )


def resolve_repository(url: str | None, *, cwd: Path) -> RepositoryReference:
    if url:
        return parse_git_url(url)
    try:
        remote_url = run(["git", "-C", str(cwd), "remote", "get-url", "origin"]).strip()
    except CommandError as exc:
        raise ProviderNotFound(
            "No Git provider could be found. "
            "Are you in a directory containing a `.git/config` file?"
        ) from exc
    return parse_git_url(remote_url)
