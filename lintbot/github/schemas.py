"""
GitHub Webhook / API response schemas（Pydantic）。

说明：
- 字段只覆盖当前需要的子集（PR webhook、PR files、review comments、issue）。
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class GitHubOwner(BaseModel):
    login: str


class GitHubRepository(BaseModel):
    name: str
    owner: GitHubOwner
    full_name: str
    clone_url: str


class GitHubPullRequestHead(BaseModel):
    sha: str
    ref: str


class GitHubPullRequestBase(BaseModel):
    ref: str


class GitHubPullRequest(BaseModel):
    number: int
    html_url: str = ""
    head: GitHubPullRequestHead
    base: GitHubPullRequestBase
    merged: bool = False


class GitHubPullRequestWebhookEvent(BaseModel):
    """
    GitHub `pull_request` webhook event（最小结构）。

    action: opened/reopened/synchronize 等
    """

    action: Literal[
        "opened",
        "reopened",
        "synchronize",
        "closed",
        "edited",
        "ready_for_review",
        "labeled",
        "unlabeled",
        "assigned",
        "unassigned",
        "review_requested",
        "review_request_removed",
        "converted_to_draft",
    ]
    pull_request: GitHubPullRequest
    repository: GitHubRepository


class GitHubPullRequestFile(BaseModel):
    """
    PR 文件列表 item（GET /pulls/{pull_number}/files）。

    patch 可能缺失（例如大文件/二进制/被截断），这种文件不会有任何相关问题。
    """

    filename: str
    status: Literal["added", "modified", "removed", "renamed", "changed", "copied", "unchanged"]
    patch: str | None = None


class GitHubReviewComment(BaseModel):
    """PR 行内评论（GET /pulls/{pull_number}/comments）。line 为 None 表示评论已 outdated。"""

    id: int
    path: str
    line: int | None = None
    body: str


class GitHubIssue(BaseModel):
    number: int
    title: str
    body: str | None = None
    html_url: str = ""
