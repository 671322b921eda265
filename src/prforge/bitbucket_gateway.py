from __future__ import annotations

import logging
from typing import cast
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

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


LOGGER = logging.getLogger("prforge.bitbucket_gateway")
_IDEMPOTENT_METHODS = frozenset({"GET", "PUT"})
_MERGE_STATES: dict[str, MergeState] = {
    "OPEN": "open",
    "MERGED": "merged",
    "DECLINED": "closed",
}


class BitbucketServerGateway(GitProviderGateway):
    """Bitbucket Server (Stash) REST API 1.0 backend.

    Bitbucket Server pull requests carry no labels, so ``list_labels`` is always
    empty and requested labels are only logged.
    """

    kind = "bitbucket_server"

    def __init__(
        self,
        *,
        api_url: str,
        token: str,
        username: str | None = None,
        retry: RetrySettings | None = None,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._retry = retry or RetrySettings()
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        if username:
            self._session.auth = HTTPBasicAuth(username, token)
        else:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._session.headers["Accept"] = "application/json"

    def get_pull_request(self, repo: RepositoryReference, number: int | str) -> PullRequest:
        payload = self._request(
            "get pull request",
            "GET",
            f"{self._repo_url(repo)}/pull-requests/{quote(str(number), safe='')}",
            repo=repo,
        )
        pr = _parse_pull_request(
            _require_object(payload, repo=repo, what="pull request"),
            operation="get pull request",
            repo=repo,
        )
        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="pull_request",
            repo_full_name=repo.full_name,
            pr_number=pr.number,
        )
        return pr

    def list_labels(self, pr: PullRequest) -> tuple[Label, ...]:
        return ()

    def find_open_pull_request(
        self, repo: RepositoryReference, *, head: str, base: str
    ) -> PullRequest | None:
        start = 0
        while True:
            payload = self._request(
                "find pull request",
                "GET",
                f"{self._repo_url(repo)}/pull-requests",
                repo=repo,
                params={
                    "state": "OPEN",
                    "direction": "OUTGOING",
                    "at": f"refs/heads/{head}",
                    "start": start,
                    "limit": 100,
                },
            )
            page = _require_object(payload, repo=repo, what="pull request page")
            values = page.get("values")
            if isinstance(values, list):
                for item in values:
                    if not isinstance(item, dict):
                        continue
                    pr = _parse_pull_request(
                        cast(dict[str, object], item), operation="find pull request", repo=repo
                    )
                    if pr.head == head and pr.base == base:
                        log_event(
                            LOGGER,
                            "bitbucket_read",
                            endpoint="pull_request_lookup_by_head",
                            repo_full_name=repo.full_name,
                            head=head,
                            found=True,
                            pr_number=pr.number,
                        )
                        return pr
            if page.get("isLastPage", True) is not False:
                break
            next_start = page.get("nextPageStart")
            if not isinstance(next_start, int):
                break
            start = next_start

        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="pull_request_lookup_by_head",
            repo_full_name=repo.full_name,
            head=head,
            found=False,
        )
        return None

    def create_pull_request(
        self, repo: RepositoryReference, spec: PullRequestSpec
    ) -> PullRequestHandle:
        try:
            payload = self._request(
                "create pull request",
                "POST",
                f"{self._repo_url(repo)}/pull-requests",
                repo=repo,
                body={
                    "title": spec.title,
                    "description": spec.body,
                    "fromRef": _ref_payload(repo, spec.branch),
                    "toRef": _ref_payload(repo, spec.base),
                },
            )
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
        pr = _parse_pull_request(
            _require_object(payload, repo=repo, what="pull request"),
            operation="create pull request",
            repo=repo,
        )
        self._log_ignored_labels(repo, pr.number, spec.labels)
        log_event(
            LOGGER,
            "pull_request_created",
            repo_full_name=repo.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=spec.base,
            head=spec.branch,
        )
        return PullRequestHandle(number=pr.number, url=pr.html_url, merge_state=pr.state)

    def update_pull_request(
        self, repo: RepositoryReference, existing: PullRequest, spec: PullRequestSpec
    ) -> PullRequestHandle:
        version = existing.version
        if version is None:
            version = self.get_pull_request(repo, existing.number).version
        payload = self._request(
            "update pull request",
            "PUT",
            f"{self._repo_url(repo)}/pull-requests/{existing.number}",
            repo=repo,
            body={"version": version, "title": spec.title, "description": spec.body},
        )
        pr = _parse_pull_request(
            _require_object(payload, repo=repo, what="pull request"),
            operation="update pull request",
            repo=repo,
        )
        self._log_ignored_labels(repo, pr.number, spec.labels)
        log_event(
            LOGGER,
            "pull_request_updated",
            repo_full_name=repo.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
        )
        return PullRequestHandle(number=pr.number, url=pr.html_url, merge_state=pr.state)

    def get_merge_status(
        self, repo: RepositoryReference, handle: PullRequestHandle
    ) -> MergeStatus:
        pr = self.get_pull_request(repo, handle.number)
        build_state: BuildState = "unknown"
        if pr.head_sha:
            payload = self._request(
                "get build status",
                "GET",
                f"{self._api_url}/rest/build-status/1.0/commits/{pr.head_sha}",
                repo=repo,
            )
            build_state = _summarize_build_states(
                _require_object(payload, repo=repo, what="build status")
            )
        return MergeStatus(state=pr.state, build_state=build_state)

    def _repo_url(self, repo: RepositoryReference) -> str:
        project = quote(repo.organisation, safe="")
        slug = quote(repo.name, safe="")
        return f"{self._api_url}/rest/api/1.0/projects/{project}/repos/{slug}"

    def _log_ignored_labels(
        self, repo: RepositoryReference, number: int, labels: tuple[str, ...]
    ) -> None:
        if labels:
            log_event(
                LOGGER,
                "bitbucket_labels_unsupported",
                repo_full_name=repo.full_name,
                pr_number=number,
                labels=labels,
            )

    def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        repo: RepositoryReference,
        params: dict[str, object] | None = None,
        body: dict[str, object] | None = None,
    ) -> object:
        def call() -> object:
            return self._send(operation, method, url, repo=repo, params=params, body=body)

        if method in _IDEMPOTENT_METHODS:
            return with_retries(operation, call, retry=self._retry)
        return call()

    def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        repo: RepositoryReference,
        params: dict[str, object] | None,
        body: dict[str, object] | None,
    ) -> object:
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                timeout=self._timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(
                operation, repo=repo.full_name, detail=f"{type(exc).__name__}: {exc}"
            ) from exc

        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            raise TransientProviderError(
                operation,
                repo=repo.full_name,
                detail=response.text[:240] or "<empty>",
                status_code=status_code,
            )
        if status_code < 200 or status_code >= 300:
            raise ProviderAPIError(
                operation,
                repo=repo.full_name,
                detail=response.text[:240] or "<empty>",
                status_code=status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderAPIError(
                operation,
                repo=repo.full_name,
                detail="invalid JSON response",
                status_code=status_code,
            ) from exc


def _ref_payload(repo: RepositoryReference, branch: str) -> dict[str, object]:
    return {
        "id": f"refs/heads/{branch}",
        "repository": {"slug": repo.name, "project": {"key": repo.organisation}},
    }


def _require_object(
    payload: object, *, repo: RepositoryReference, what: str
) -> dict[str, object]:
    if not isinstance(payload, dict):
        raise ProviderAPIError(
            f"read {what}", repo=repo.full_name, detail=f"expected object for {what}"
        )
    return cast(dict[str, object], payload)


def _parse_pull_request(
    payload: dict[str, object], *, operation: str, repo: RepositoryReference
) -> PullRequest:
    from_ref = payload.get("fromRef")
    to_ref = payload.get("toRef")
    from_obj = cast(dict[str, object], from_ref) if isinstance(from_ref, dict) else {}
    to_obj = cast(dict[str, object], to_ref) if isinstance(to_ref, dict) else {}

    html_url = ""
    links = payload.get("links")
    if isinstance(links, dict):
        self_links = links.get("self")
        if isinstance(self_links, list) and self_links and isinstance(self_links[0], dict):
            href = self_links[0].get("href")
            if isinstance(href, str):
                html_url = href

    raw_id = payload.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, int):
        raise ProviderAPIError(
            operation, repo=repo.full_name, detail="pull request id must be an integer"
        )
    raw_version = payload.get("version")

    return PullRequest(
        number=raw_id,
        title=str(payload.get("title") or ""),
        body=str(payload.get("description") or ""),
        html_url=html_url,
        head=str(from_obj.get("displayId") or ""),
        base=str(to_obj.get("displayId") or ""),
        state=_MERGE_STATES.get(str(payload.get("state") or "OPEN").upper(), "open"),
        head_sha=str(from_obj.get("latestCommit") or ""),
        version=raw_version if isinstance(raw_version, int) else None,
    )


def _summarize_build_states(payload: dict[str, object]) -> BuildState:
    values = payload.get("values")
    if not isinstance(values, list) or not values:
        return "unknown"
    states = {
        str(item.get("state") or "").upper() for item in values if isinstance(item, dict)
    }
    if "FAILED" in states:
        return "failure"
    if "INPROGRESS" in states:
        return "pending"
    if states == {"SUCCESSFUL"}:
        return "success"
    return "unknown"
