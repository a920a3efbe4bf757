from __future__ import annotations

import hashlib
import hmac
import json

from fastapi import FastAPI
from fastapi.testclient import TestClient

from lintbot.config import GitHubConfig
from lintbot.config import GitLabConfig
from lintbot.github.schemas import GitHubPullRequestWebhookEvent
from lintbot.github.webhook import build_github_webhook_router
from lintbot.gitlab.schemas import GitLabMergeRequestWebhookEvent
from lintbot.gitlab.webhook import build_gitlab_webhook_router

SECRET = "s3cret"

PR_PAYLOAD = {
    "action": "opened",
    "pull_request": {
        "number": 7,
        "head": {"sha": "abc123", "ref": "feature"},
        "base": {"ref": "main"},
    },
    "repository": {
        "name": "widgets",
        "owner": {"login": "acme"},
        "full_name": "acme/widgets",
        "clone_url": "https://github.test/acme/widgets.git",
    },
}

MR_PAYLOAD = {
    "object_kind": "merge_request",
    "user": {"username": "alice"},
    "project": {"id": 42, "web_url": "https://gitlab.test/acme/widgets", "path_with_namespace": "acme/widgets"},
    "object_attributes": {
        "iid": 3,
        "action": "open",
        "last_commit": {"id": "def456"},
        "target_branch": "main",
        "source_branch": "feature",
    },
}


def _sign(body: bytes) -> str:
    return "sha256=" + hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _github_client(received: list) -> TestClient:
    async def handler(event: GitHubPullRequestWebhookEvent, delivery_id: str) -> None:
        received.append((event, delivery_id))

    config = GitHubConfig(api_base_url="https://api.github.test", token="t", webhook_secret=SECRET)
    app = FastAPI()
    app.include_router(build_github_webhook_router(config=config, handler=handler))
    return TestClient(app)


def _gitlab_client(received: list) -> TestClient:
    async def handler(event: GitLabMergeRequestWebhookEvent, event_uuid: str) -> None:
        received.append((event, event_uuid))

    config = GitLabConfig(base_url="https://gitlab.test", token="t", webhook_secret=SECRET)
    app = FastAPI()
    app.include_router(build_gitlab_webhook_router(config=config, handler=handler))
    return TestClient(app)


def test_github_webhook_accepts_signed_pull_request() -> None:
    received: list = []
    body = json.dumps(PR_PAYLOAD).encode("utf-8")
    response = _github_client(received).post(
        "/github/webhook",
        content=body,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": _sign(body), "X-GitHub-Delivery": "d-1"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "accepted"}
    # BackgroundTasks 在 TestClient 里同步执行完
    assert received[0][1] == "d-1"
    assert received[0][0].pull_request.number == 7


def test_github_webhook_rejects_bad_signature() -> None:
    received: list = []
    body = json.dumps(PR_PAYLOAD).encode("utf-8")
    response = _github_client(received).post(
        "/github/webhook",
        content=body,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": "sha256=deadbeef"},
    )
    assert response.status_code == 401
    assert received == []


def test_github_webhook_ignores_other_events_and_actions() -> None:
    received: list = []
    client = _github_client(received)
    body = json.dumps(PR_PAYLOAD).encode("utf-8")
    response = client.post(
        "/github/webhook", content=body, headers={"X-GitHub-Event": "push", "X-Hub-Signature-256": _sign(body)}
    )
    assert response.json() == {"status": "ignored"}

    closed = json.dumps({**PR_PAYLOAD, "action": "closed"}).encode("utf-8")
    response = client.post(
        "/github/webhook",
        content=closed,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": _sign(closed)},
    )
    assert response.json() == {"status": "ignored"}
    assert received == []


def test_github_webhook_invalid_payload_is_400() -> None:
    body = b"{not json"
    response = _github_client([]).post(
        "/github/webhook",
        content=body,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": _sign(body)},
    )
    assert response.status_code == 400


def test_gitlab_webhook_token_and_dispatch() -> None:
    received: list = []
    client = _gitlab_client(received)

    response = client.post("/gitlab/webhook", json=MR_PAYLOAD, headers={"X-Gitlab-Token": "wrong"})
    assert response.status_code == 401

    response = client.post(
        "/gitlab/webhook",
        json=MR_PAYLOAD,
        headers={"X-Gitlab-Token": SECRET, "X-Gitlab-Event-UUID": "u-1"},
    )
    assert response.json() == {"status": "accepted"}
    assert received[0][1] == "u-1"
    assert received[0][0].object_attributes.iid == 3


def test_gitlab_webhook_ignores_non_merge_request() -> None:
    received: list = []
    client = _gitlab_client(received)
    response = client.post("/gitlab/webhook", json={"object_kind": "push"}, headers={"X-Gitlab-Token": SECRET})
    assert response.json() == {"status": "ignored"}

    merged = {**MR_PAYLOAD, "object_attributes": {**MR_PAYLOAD["object_attributes"], "action": "merge"}}
    response = client.post("/gitlab/webhook", json=merged, headers={"X-Gitlab-Token": SECRET})
    assert response.json() == {"status": "ignored"}
    assert received == []
