"""
GitLab Webhook / API response schemas（Pydantic）。

为什么要单独放 schema：
- GitLab 的 payload 结构复杂，直接用 dict 容易写错 key
- schema 校验失败会立刻暴露问题（比“默默 None”安全）

说明：
- 这里的字段只覆盖当前所需子集，后续可按需补充
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class GitLabUser(BaseModel):
    """Webhook 里的 user 子结构（只取 username）。"""

    username: str


class GitLabProject(BaseModel):
    """Webhook 里的 project 子结构。"""

    id: int
    web_url: str
    path_with_namespace: str
    git_http_url: str = ""

    @property
    def namespace(self) -> str:
        return self.path_with_namespace.rsplit("/", 1)[0]

    @property
    def name(self) -> str:
        return self.path_with_namespace.rsplit("/", 1)[-1]


class GitLabMergeRequestObjectAttributes(BaseModel):
    """Merge request webhook 的 object_attributes 子结构。"""

    iid: int
    action: Literal["open", "update", "reopen", "merge", "close", "approved", "unapproved", "approval", "unapproval"]
    last_commit: dict[str, object]
    target_branch: str
    source_branch: str
    url: str = ""


class GitLabMergeRequestWebhookEvent(BaseModel):
    """Merge request webhook 的最小结构。"""

    object_kind: Literal["merge_request"]
    user: GitLabUser
    project: GitLabProject
    object_attributes: GitLabMergeRequestObjectAttributes


class GitLabDiffRef(BaseModel):
    """GitLab 返回的 diff refs（行内评论 position 需要）。"""

    base_sha: str
    head_sha: str
    start_sha: str


class GitLabMRChange(BaseModel):
    """单个文件变更（包含 diff 字符串）。"""

    old_path: str
    new_path: str
    a_mode: str | None = None
    b_mode: str | None = None
    new_file: bool
    renamed_file: bool
    deleted_file: bool
    diff: str


class GitLabMergeRequestChanges(BaseModel):
    """MR changes API 返回结构（changes + diff_refs）。"""

    changes: list[GitLabMRChange]
    diff_refs: GitLabDiffRef


class GitLabNotePosition(BaseModel):
    new_path: str | None = None
    new_line: int | None = None


class GitLabNote(BaseModel):
    """MR note 返回结构。行内评论（DiffNote）带 position。"""

    id: int
    body: str
    type: str | None = None
    position: GitLabNotePosition | None = None


class GitLabDiscussion(BaseModel):
    id: str
    notes: list[GitLabNote]
