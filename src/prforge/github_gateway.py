from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import urlencode

from prforge.config import RetrySettings
from prforge.errors import ProviderAPIError, TransientProviderError
from prforge.models import (
    BuildState,
    Label,
    MergeState,
    MergeStatus,
    PullRequest,
    PullRequestHandle,
    PullRequestSpec,
    RepositoryReference,
)
from prforge.observability import log_event
from prforge.providers import GitProviderGateway, with_retries
from prforge.shell import CommandError, run


LOGGER = logging.getLogger("prforge.github_gateway")
_IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "PATCH"})
_BUILD_STATES: dict[str, BuildState] = {
    "pending": "pending",
    "success": "success",
    "failure": "failure",
    "error": "failure",
}


@dataclass(frozen=True)
class GitHubGateway(GitProviderGateway):
    retry: RetrySettings = field(default_factory=RetrySettings)
    timeout_seconds: float = 60.0

    kind = "github"

    def get_pull_request(self, repo: RepositoryReference, number: int | str) -> PullRequest:
        payload = self._request(
            "get pull request",
            "GET",
            f"{_repo_path(repo)}/pulls/{number}",
            repo=repo,
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise ProviderAPIError(
                "get pull request",
                repo=repo.full_name,
                detail="expected object for pull request",
            )
        with _malformed_payload("get pull request", repo):
            pr = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo_full_name=repo.full_name,
            pr_number=pr.number,
        )
        return pr

    def list_labels(self, pr: PullRequest) -> tuple[Label, ...]:
        return pr.labels

    def find_open_pull_request(
        self, repo: RepositoryReference, *, head: str, base: str
    ) -> PullRequest | None:
        query = urlencode(
            {
                "state": "open",
                "head": f"{repo.organisation}:{head}",
                "base": base,
                "per_page": "100",
            }
        )
        payload = self._request(
            "find pull request",
            "GET",
            f"{_repo_path(repo)}/pulls?{query}",
            repo=repo,
        )
        if not isinstance(payload, list):
            raise ProviderAPIError(
                "find pull request",
                repo=repo.full_name,
                detail="expected list for pull request lookup",
            )

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            with _malformed_payload("find pull request", repo):
                candidates.append(_parse_pull_request(item_obj))

        selected = max(candidates, key=lambda pr: pr.number) if candidates else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            repo_full_name=repo.full_name,
            head=head,
            base=base,
            found=selected is not None,
            pr_number=selected.number if selected else None,
        )
        return selected

    def create_pull_request(
        self, repo: RepositoryReference, spec: PullRequestSpec
    ) -> PullRequestHandle:
        try:
            payload = self._request(
                "create pull request",
                "POST",
                f"{_repo_path(repo)}/pulls",
                repo=repo,
                payload={
                    "title": spec.title,
                    "head": spec.branch,
                    "base": spec.base,
                    "body": spec.body,
                },
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise ProviderAPIError(
                    "create pull request",
                    repo=repo.full_name,
                    detail="expected object for created pull request",
                )
            with _malformed_payload("create pull request", repo):
                number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except ProviderAPIError as exc:
            log_event(
                LOGGER,
                "pull_request_create_failed",
                repo_full_name=repo.full_name,
                base=spec.base,
                head=spec.branch,
                status_code=exc.status_code,
            )
            raise
        self._add_labels(repo, number, spec.labels)
        log_event(
            LOGGER,
            "pull_request_created",
            repo_full_name=repo.full_name,
            pr_number=number,
            pr_url=html_url,
            base=spec.base,
            head=spec.branch,
        )
        return PullRequestHandle(number=number, url=html_url, merge_state="open")

    def update_pull_request(
        self, repo: RepositoryReference, existing: PullRequest, spec: PullRequestSpec
    ) -> PullRequestHandle:
        payload = self._request(
            "update pull request",
            "PATCH",
            f"{_repo_path(repo)}/pulls/{existing.number}",
            repo=repo,
            payload={"title": spec.title, "body": spec.body},
        )
        payload_obj = _as_object_dict(payload)
        html_url = existing.html_url
        state: MergeState = existing.state
        if payload_obj is not None:
            with _malformed_payload("update pull request", repo):
                updated = _parse_pull_request(payload_obj)
            html_url = updated.html_url or html_url
            state = updated.state
        self._add_labels(repo, existing.number, spec.labels)
        log_event(
            LOGGER,
            "pull_request_updated",
            repo_full_name=repo.full_name,
            pr_number=existing.number,
            pr_url=html_url,
        )
        return PullRequestHandle(number=existing.number, url=html_url, merge_state=state)

    def get_merge_status(
        self, repo: RepositoryReference, handle: PullRequestHandle
    ) -> MergeStatus:
        pr = self.get_pull_request(repo, handle.number)
        build_state: BuildState = "unknown"
        if pr.head_sha:
            payload = self._request(
                "get commit status",
                "GET",
                f"{_repo_path(repo)}/commits/{pr.head_sha}/status",
                repo=repo,
            )
            payload_obj = _as_object_dict(payload)
            with _malformed_payload("get commit status", repo):
                has_statuses = payload_obj is not None and _as_int(
                    payload_obj.get("total_count", 0), field="total_count"
                )
            if payload_obj is not None and has_statuses:
                raw_state = _as_string(payload_obj.get("state")).strip().lower()
                build_state = _BUILD_STATES.get(raw_state, "unknown")
        return MergeStatus(state=pr.state, build_state=build_state)

    def _add_labels(
        self, repo: RepositoryReference, number: int, labels: tuple[str, ...]
    ) -> None:
        if not labels:
            return
        # Adding is idempotent on GitHub, so retries are safe even though this is a POST.
        self._request(
            "add labels",
            "POST",
            f"{_repo_path(repo)}/issues/{number}/labels",
            repo=repo,
            payload={"labels": list(labels)},
            retryable=True,
        )
        log_event(
            LOGGER,
            "github_labels_added",
            repo_full_name=repo.full_name,
            pr_number=number,
            labels=labels,
        )

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        repo: RepositoryReference,
        payload: dict[str, object] | None = None,
        retryable: bool | None = None,
    ) -> object:
        method_upper = method.upper()

        def call() -> object:
            return self._api_json(operation, method_upper, path, repo=repo, payload=payload)

        if retryable is None:
            retryable = method_upper in _IDEMPOTENT_METHODS
        if retryable:
            return with_retries(operation, call, retry=self.retry)
        return call()

    def _api_json(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        repo: RepositoryReference,
        payload: dict[str, object] | None = None,
    ) -> object:
        cmd = ["gh", "api", "--method", method, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(
                cmd,
                input_text=stdin_payload,
                check=False,
                timeout_seconds=self.timeout_seconds,
            )
        except CommandError as exc:
            raise TransientProviderError(
                operation, repo=repo.full_name, detail=str(exc).splitlines()[0]
            ) from exc

        try:
            status_code, _headers, body = _parse_http_response(raw)
        except ValueError as exc:
            log_event(
                LOGGER,
                "github_api_unparseable",
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise TransientProviderError(
                operation, repo=repo.full_name, detail=str(exc)
            ) from exc

        if status_code >= 500 or status_code == 429:
            raise TransientProviderError(
                operation,
                repo=repo.full_name,
                detail=_preview_for_log(body),
                status_code=status_code,
            )
        if status_code < 200 or status_code >= 300:
            raise ProviderAPIError(
                operation,
                repo=repo.full_name,
                detail=_preview_for_log(body),
                status_code=status_code,
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderAPIError(
                operation,
                repo=repo.full_name,
                detail=f"invalid JSON: {_preview_for_log(body)}",
                status_code=status_code,
            ) from exc


def _repo_path(repo: RepositoryReference) -> str:
    return f"/repos/{repo.organisation}/{repo.name}"


@contextmanager
def _malformed_payload(operation: str, repo: RepositoryReference) -> Iterator[None]:
    try:
        yield
    except ValueError as exc:
        raise ProviderAPIError(operation, repo=repo.full_name, detail=str(exc)) from exc


def _parse_pull_request(payload_obj: dict[str, object]) -> PullRequest:
    head = _as_object_dict(payload_obj.get("head")) or {}
    base = _as_object_dict(payload_obj.get("base")) or {}
    labels: list[Label] = []
    labels_obj = payload_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                labels.append(Label(name=name))

    raw_state = _as_string(payload_obj.get("state")).strip().lower()
    merged = payload_obj.get("merged") is True or bool(payload_obj.get("merged_at"))
    state: MergeState
    if merged:
        state = "merged"
    elif raw_state == "closed":
        state = "closed"
    else:
        state = "open"

    return PullRequest(
        number=_as_int(payload_obj.get("number"), field="number"),
        title=_as_string(payload_obj.get("title")),
        body=_as_string(payload_obj.get("body")),
        html_url=_as_string(payload_obj.get("html_url")),
        head=_as_string(head.get("ref")),
        base=_as_string(base.get("ref")),
        state=state,
        labels=tuple(labels),
        head_sha=_as_string(head.get("sha")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    # gh prints one header block per redirect; the last status line wins.
    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise ValueError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise ValueError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise ValueError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise ValueError(f"Unexpected GitHub response type for {field}")
