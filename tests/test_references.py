from __future__ import annotations

import json

import httpx
import pytest

from lintbot.config import IssueReferenceRule
from lintbot.github.schemas import GitHubIssue
from lintbot.infra.cache import IssueReferenceCache
from lintbot.infra.context import new_event_context
from lintbot.lint.models import Diagnostic
from lintbot.llm.client import OpenAICompatLLMClient
from lintbot.review.provider import ProviderAPIError
from lintbot.review.reconcile import COMMENT_FOOTER
from lintbot.review.references import CommentDecorator

ISSUE_URL = "https://github.test/acme/lint-docs/issues/12"


class FakeGitHubClient:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str, int]] = []
        self.fail = fail

    async def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
        self.calls.append((owner, repo, number))
        if self.fail:
            raise ProviderAPIError("GitHub", 500, "boom")
        return GitHubIssue(number=number, title="Why we forbid naked returns", body="See the style guide.")


def _decorator(github_client=None, llm_client=None) -> CommentDecorator:
    return CommentDecorator(
        rules={"golangci-lint": [IssueReferenceRule(pattern=r"naked return", url=ISSUE_URL)]},
        issue_cache=IssueReferenceCache(),
        github_client=github_client,
        llm_client=llm_client,
    )


@pytest.mark.anyio
async def test_matching_message_links_issue_and_caches_details() -> None:
    github = FakeGitHubClient()
    decorator = _decorator(github_client=github)
    diagnostic = Diagnostic(file="a.go", line=3, message="naked return in func with 20 lines")
    ctx = new_event_context()

    body = await decorator.render(ctx, "golangci-lint", diagnostic)
    again = await decorator.render(ctx, "golangci-lint", diagnostic)

    assert body.startswith(f"[golangci-lint] [naked return in func with 20 lines]({ISSUE_URL})\n")
    assert "**Why we forbid naked returns**" in body
    assert again == body
    assert github.calls == [("acme", "lint-docs", 12)]


def test_rules_are_per_linter() -> None:
    decorator = _decorator(github_client=FakeGitHubClient())
    assert decorator.match_reference("golangci-lint", "naked return") == ISSUE_URL
    assert decorator.match_reference("shellcheck", "naked return") is None


@pytest.mark.anyio
async def test_issue_fetch_failure_keeps_link_with_default_details() -> None:
    decorator = _decorator(github_client=FakeGitHubClient(fail=True))
    body = await decorator.render(new_event_context(), "golangci-lint", Diagnostic(file="a.go", line=3, message="naked return"))
    assert body == f"[golangci-lint] [naked return]({ISSUE_URL})\n{COMMENT_FOOTER}"


@pytest.mark.anyio
async def test_llm_explanation_goes_into_footer() -> None:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "m",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": "Quote the variable to avoid word splitting."},
                        "finish_reason": "stop",
                    }
                ],
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        llm = OpenAICompatLLMClient(api_key="k", base_url="https://llm.test", http_client=http_client, model="m")
        decorator = _decorator(llm_client=llm)
        body = await decorator.render(
            new_event_context(), "shellcheck", Diagnostic(file="run.sh", line=2, message="SC2086: Double quote")
        )

    assert body.startswith("[shellcheck] SC2086: Double quote\n<details>\n\n**Explanation**\n\n")
    assert "Quote the variable" in body
    assert "SC2086" in requests[0]["messages"][1]["content"]


@pytest.mark.anyio
async def test_llm_failure_falls_back_to_default_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "down"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        llm = OpenAICompatLLMClient(api_key="k", base_url="https://llm.test/v1", http_client=http_client, model="m")
        decorator = _decorator(llm_client=llm)
        body = await decorator.render(new_event_context(), "shellcheck", Diagnostic(file="run.sh", line=2, message="m"))

    assert body == f"[shellcheck] m\n{COMMENT_FOOTER}"
