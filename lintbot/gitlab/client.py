"""
GitLab API 客户端（外部系统连接器）。

约定：
- 这里只做“HTTP 调用 + 错误处理 + schema 校验”，不做业务决策。
- 发生错误时**直接抛错**，不要吞异常（便于定位与告警）；重试由上层负责。
"""

from __future__ import annotations

from typing import Any

import httpx

from lintbot.gitlab.schemas import GitLabDiscussion
from lintbot.gitlab.schemas import GitLabDiffRef
from lintbot.gitlab.schemas import GitLabMergeRequestChanges
from lintbot.gitlab.schemas import GitLabNote
from lintbot.infra.cache import TokenCache
from lintbot.review.provider import ProviderAPIError

PER_PAGE = 100


class GitLabClient:
    """GitLab API client：MR changes / notes / discussions。"""

    def __init__(
        self,
        base_url: str,
        private_token: str,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache | None = None,
    ) -> None:
        """
        - base_url: GitLab 实例地址（不包含末尾 /）
        - private_token: PRIVATE-TOKEN（建议用专用机器人账号）
        - http_client: 复用的 httpx.AsyncClient
        - token_cache: token 缓存，key 为 `gitlab:<project_id>`
        """
        self._base_url = base_url.rstrip("/")
        self._private_token = private_token
        self._http_client = http_client
        self._token_cache = token_cache or TokenCache()

    async def _load_token(self) -> str:
        return self._private_token

    async def _headers(self, project_id: int) -> dict[str, str]:
        """GitLab API 鉴权头。"""
        token = await self._token_cache.get_or_load(TokenCache.key("gitlab", str(project_id)), self._load_token)
        return {"PRIVATE-TOKEN": token}

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ProviderAPIError("GitLab", response.status_code, response.text)

    def _mr_url(self, project_id: int, mr_iid: int) -> str:
        return f"{self._base_url}/api/v4/projects/{project_id}/merge_requests/{mr_iid}"

    async def get_merge_request_changes(self, project_id: int, mr_iid: int) -> GitLabMergeRequestChanges:
        """
        获取 MR changes（包含每个文件的 diff）。

        说明：
        - GitLab v4 API: GET /projects/:id/merge_requests/:iid/changes
        - 返回用 Pydantic 校验为 `GitLabMergeRequestChanges`
        """
        url = f"{self._mr_url(project_id, mr_iid)}/changes"
        response = await self._http_client.get(url, headers=await self._headers(project_id))
        self._raise_for_status(response)
        return GitLabMergeRequestChanges.model_validate(response.json())

    async def list_merge_request_notes(self, project_id: int, mr_iid: int) -> list[GitLabNote]:
        """拉取 MR 的全部 notes（分页）。"""
        url = f"{self._mr_url(project_id, mr_iid)}/notes"
        page = 1
        notes: list[GitLabNote] = []
        while True:
            response = await self._http_client.get(
                url,
                headers=await self._headers(project_id),
                params={"per_page": PER_PAGE, "page": page},
            )
            self._raise_for_status(response)
            data = response.json()
            if not isinstance(data, list):
                raise RuntimeError(f"Unexpected GitLab response shape for MR notes: {data}")
            notes.extend(GitLabNote.model_validate(x) for x in data)
            if len(data) < PER_PAGE:
                break
            page += 1
        return notes

    async def create_merge_request_discussion(
        self,
        project_id: int,
        mr_iid: int,
        body: str,
        diff_refs: GitLabDiffRef,
        new_path: str,
        old_path: str,
        new_line: int,
    ) -> GitLabDiscussion:
        """
        在 MR 的某一行上创建讨论（行内评论）。

        GitLab 需要 position：diff_refs 三个 SHA + 文件路径 + 新文件侧行号。
        """
        url = f"{self._mr_url(project_id, mr_iid)}/discussions"
        payload: dict[str, Any] = {
            "body": body,
            "position": {
                "position_type": "text",
                "base_sha": diff_refs.base_sha,
                "start_sha": diff_refs.start_sha,
                "head_sha": diff_refs.head_sha,
                "new_path": new_path,
                "old_path": old_path,
                "new_line": new_line,
            },
        }
        response = await self._http_client.post(url, headers=await self._headers(project_id), json=payload)
        self._raise_for_status(response)
        return GitLabDiscussion.model_validate(response.json())

    async def delete_merge_request_note(self, project_id: int, mr_iid: int, note_id: int) -> None:
        """删除 MR note；404（已被删除）视为成功。"""
        url = f"{self._mr_url(project_id, mr_iid)}/notes/{note_id}"
        response = await self._http_client.delete(url, headers=await self._headers(project_id))
        if response.status_code == 404:
            return
        self._raise_for_status(response)
