from __future__ import annotations

import json

import pytest
import requests
from requests.auth import HTTPBasicAuth

from prforge.bitbucket_gateway import BitbucketServerGateway, _summarize_build_states
from prforge.config import RetrySettings
from prforge.errors import ProviderAPIError, TransientProviderError
from prforge.models import PullRequestHandle, PullRequestSpec, RepositoryReference


API = "https://stash.example.com"
REPO = RepositoryReference(
    host="stash.example.com",
    organisation="OPS",
    name="env-prod",
    clone_url="https://stash.example.com/scm/OPS/env-prod.git",
)
PR_BASE = f"{API}/rest/api/1.0/projects/OPS/repos/env-prod/pull-requests"


class FakeResponse:
    def __init__(self, status_code: int, payload: object | None = None) -> None:
        self.status_code = status_code
        self.text = "" if payload is None else json.dumps(payload)
        self.content = self.text.encode("utf-8")
        self._payload = payload

    def json(self) -> object:
        return self._payload


class FakeSession:
    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, object]] = []
        self.headers: dict[str, str] = {}
        self.auth: object = None

    def request(self, method: str, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _pr(number: int, *, state: str = "OPEN", head: str = "add-app-app-2.0.0") -> dict[str, object]:
    return {
        "id": number,
        "version": 3,
        "title": "Add app 2.0.0",
        "description": "Add app app 2.0.0",
        "state": state,
        "fromRef": {"displayId": head, "latestCommit": "cafe"},
        "toRef": {"displayId": "master"},
        "links": {"self": [{"href": f"{API}/projects/OPS/repos/env-prod/pull-requests/{number}"}]},
    }


def _gateway(session: FakeSession, **kwargs: object) -> BitbucketServerGateway:
    return BitbucketServerGateway(
        api_url=f"{API}/",
        token="secret",
        session=session,  # type: ignore[arg-type]
        retry=RetrySettings(max_attempts=3, backoff_seconds=0),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture(autouse=True)
def _disable_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("prforge.providers.time.sleep", lambda _: None)


def test_auth_uses_basic_with_username_else_bearer() -> None:
    basic = FakeSession()
    _gateway(basic, username="jenkins")
    assert isinstance(basic.auth, HTTPBasicAuth)
    assert basic.auth.username == "jenkins"

    bearer = FakeSession()
    _gateway(bearer)
    assert bearer.auth is None
    assert bearer.headers["Authorization"] == "Bearer secret"


def test_get_pull_request_maps_fields() -> None:
    session = FakeSession(FakeResponse(200, _pr(34, state="MERGED")))

    pr = _gateway(session).get_pull_request(REPO, "34")

    assert session.calls[0]["method"] == "GET"
    assert session.calls[0]["url"] == f"{PR_BASE}/34"
    assert pr.number == 34
    assert pr.state == "merged"
    assert pr.head == "add-app-app-2.0.0"
    assert pr.base == "master"
    assert pr.version == 3
    assert pr.html_url.endswith("/pull-requests/34")
    assert _gateway(FakeSession()).list_labels(pr) == ()


def test_find_open_pull_request_follows_pages() -> None:
    session = FakeSession(
        FakeResponse(
            200,
            {"values": [_pr(1, head="other")], "isLastPage": False, "nextPageStart": 25},
        ),
        FakeResponse(200, {"values": [_pr(2)], "isLastPage": True}),
    )

    pr = _gateway(session).find_open_pull_request(REPO, head="add-app-app-2.0.0", base="master")

    assert pr is not None and pr.number == 2
    assert [call["params"]["start"] for call in session.calls] == [0, 25]  # type: ignore[index]
    assert session.calls[0]["params"]["at"] == "refs/heads/add-app-app-2.0.0"  # type: ignore[index]


def test_find_open_pull_request_ignores_other_base() -> None:
    session = FakeSession(FakeResponse(200, {"values": [_pr(2)], "isLastPage": True}))

    assert _gateway(session).find_open_pull_request(REPO, head="add-app-app-2.0.0", base="main") is None


def test_create_pull_request_posts_refs_once() -> None:
    session = FakeSession(FakeResponse(201, _pr(40)))
    spec = PullRequestSpec(
        branch="add-app-app-2.0.0",
        base="master",
        title="Add app 2.0.0",
        body="Add app app 2.0.0",
        labels=("ignored",),
    )

    handle = _gateway(session).create_pull_request(REPO, spec)

    assert handle.number == 40
    assert handle.merge_state == "open"
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == PR_BASE
    body = call["json"]
    assert isinstance(body, dict)
    assert body["fromRef"] == {
        "id": "refs/heads/add-app-app-2.0.0",
        "repository": {"slug": "env-prod", "project": {"key": "OPS"}},
    }
    assert body["toRef"]["id"] == "refs/heads/master"


def test_create_pull_request_does_not_retry_transient_failure() -> None:
    session = FakeSession(FakeResponse(503), FakeResponse(201, _pr(40)))

    with pytest.raises(TransientProviderError):
        _gateway(session).create_pull_request(
            REPO, PullRequestSpec(branch="b", base="master", title="t", body="")
        )
    assert len(session.calls) == 1


def test_update_pull_request_sends_version() -> None:
    session = FakeSession(FakeResponse(200, _pr(34)))
    existing = _gateway(FakeSession(FakeResponse(200, _pr(34)))).get_pull_request(REPO, 34)

    handle = _gateway(session).update_pull_request(
        REPO, existing, PullRequestSpec(branch="add-app-app-2.0.0", base="master", title="T", body="B")
    )

    assert handle.number == 34
    call = session.calls[0]
    assert call["method"] == "PUT"
    assert call["json"] == {"version": 3, "title": "T", "description": "B"}


def test_reads_retry_connection_errors() -> None:
    session = FakeSession(requests.ConnectionError("reset"), FakeResponse(200, _pr(1)))

    assert _gateway(session).get_pull_request(REPO, 1).number == 1
    assert len(session.calls) == 2


def test_forbidden_is_definitive() -> None:
    session = FakeSession(FakeResponse(403, {"errors": [{"message": "no"}]}))

    with pytest.raises(ProviderAPIError) as excinfo:
        _gateway(session).get_pull_request(REPO, 1)
    assert excinfo.value.status_code == 403
    assert not isinstance(excinfo.value, TransientProviderError)
    assert len(session.calls) == 1


def test_get_merge_status_summarizes_build_states() -> None:
    session = FakeSession(
        FakeResponse(200, _pr(8)),
        FakeResponse(200, {"values": [{"state": "SUCCESSFUL"}, {"state": "INPROGRESS"}]}),
    )

    status = _gateway(session).get_merge_status(REPO, PullRequestHandle(number=8, url="u"))

    assert status.state == "open"
    assert status.build_state == "pending"
    assert session.calls[1]["url"] == f"{API}/rest/build-status/1.0/commits/cafe"


@pytest.mark.parametrize(
    ("states", "expected"),
    [
        ([], "unknown"),
        (["SUCCESSFUL"], "success"),
        (["SUCCESSFUL", "FAILED"], "failure"),
        (["INPROGRESS"], "pending"),
        (["WEIRD"], "unknown"),
    ],
)
def test_summarize_build_states(states: list[str], expected: str) -> None:
    assert _summarize_build_states({"values": [{"state": s} for s in states]}) == expected


def test_create_pull_request_rejects_payload_without_id() -> None:
    payload = _pr(40)
    del payload["id"]
    session = FakeSession(FakeResponse(201, payload))

    with pytest.raises(ProviderAPIError) as excinfo:
        _gateway(session).create_pull_request(
            REPO, PullRequestSpec(branch="b", base="master", title="t", body="")
        )

    assert excinfo.value.operation == "create pull request"
    assert excinfo.value.repo == "OPS/env-prod"
    assert "id must be an integer" in str(excinfo.value)
