"""
GitHub API 客户端（外部系统连接器）。

约定：
- 这里只做 HTTP 调用 + 错误处理 + schema 校验
- 出错直接抛错（不要吞），便于定位与告警；重试由上层 reconciliation 负责
- token 通过 TokenCache 获取（key: `github:<owner>`）
"""

from __future__ import annotations

from typing import Any

import httpx

from lintbot.github.schemas import GitHubIssue
from lintbot.github.schemas import GitHubPullRequestFile
from lintbot.github.schemas import GitHubReviewComment
from lintbot.infra.cache import TokenCache
from lintbot.review.provider import ProviderAPIError

PER_PAGE = 100


class GitHubClient:
    """GitHub API client：PR files / review comments / check runs / issues。"""

    def __init__(
        self,
        api_base_url: str,
        token: str,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache | None = None,
    ) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._token = token
        self._http_client = http_client
        self._token_cache = token_cache or TokenCache()

    async def _load_token(self) -> str:
        return self._token

    async def _headers(self, owner: str) -> dict[str, str]:
        token = await self._token_cache.get_or_load(TokenCache.key("github", owner), self._load_token)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ProviderAPIError("GitHub", response.status_code, response.text)

    async def _get_all_pages(self, owner: str, url: str) -> list[Any]:
        page = 1
        all_items: list[Any] = []
        while True:
            response = await self._http_client.get(
                url,
                headers=await self._headers(owner),
                params={"per_page": PER_PAGE, "page": page},
            )
            self._raise_for_status(response)
            data = response.json()
            if not isinstance(data, list):
                raise RuntimeError(f"Unexpected GitHub response shape for {url}: {data}")
            all_items.extend(data)
            if len(data) < PER_PAGE:
                break
            page += 1
        return all_items

    async def list_pull_request_files(self, owner: str, repo: str, pull_number: int) -> list[GitHubPullRequestFile]:
        """
        拉取 PR 的变更文件列表（包含每个文件的 patch diff）。

        注意：GitHub API 有分页；这里会拉取全部文件。
        """
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}/files"
        return [GitHubPullRequestFile.model_validate(x) for x in await self._get_all_pages(owner, url)]

    async def list_review_comments(self, owner: str, repo: str, pull_number: int) -> list[GitHubReviewComment]:
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}/comments"
        return [GitHubReviewComment.model_validate(x) for x in await self._get_all_pages(owner, url)]

    async def create_review_comment(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        commit_id: str,
        path: str,
        line: int,
        body: str,
        start_line: int = 0,
    ) -> GitHubReviewComment:
        """
        创建一条 PR 行内评论（新文件侧，side=RIGHT）。

        start_line 非 0 且小于 line 时创建多行评论。
        """
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}/comments"
        payload: dict[str, Any] = {"body": body, "commit_id": commit_id, "path": path, "line": line, "side": "RIGHT"}
        if start_line and start_line < line:
            payload["start_line"] = start_line
            payload["start_side"] = "RIGHT"
        response = await self._http_client.post(url, headers=await self._headers(owner), json=payload)
        self._raise_for_status(response)
        return GitHubReviewComment.model_validate(response.json())

    async def delete_review_comment(self, owner: str, repo: str, comment_id: int) -> None:
        """删除 PR 行内评论；404（已被删除）视为成功。"""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/comments/{comment_id}"
        response = await self._http_client.delete(url, headers=await self._headers(owner))
        if response.status_code == 404:
            return
        self._raise_for_status(response)

    async def create_check_run(self, owner: str, repo: str, payload: dict[str, Any]) -> int:
        """POST /repos/{owner}/{repo}/check-runs，返回 check run id。"""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/check-runs"
        response = await self._http_client.post(url, headers=await self._headers(owner), json=payload)
        self._raise_for_status(response)
        return int(response.json()["id"])

    async def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
        url = f"{self._api_base_url}/repos/{owner}/{repo}/issues/{number}"
        response = await self._http_client.get(url, headers=await self._headers(owner))
        self._raise_for_status(response)
        return GitHubIssue.model_validate(response.json())
