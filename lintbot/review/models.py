"""
Review 领域模型（Pydantic）。

用途：
- 把 GitHub PR files / GitLab MR changes 归一化为平台无关的结构
- 给 orchestrator / reconciliation 提供统一的 review 信息
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class FileChange(BaseModel):
    """单个文件的变更（从 GitHub files / GitLab changes 归一化而来）。"""

    path: str
    diff: str
    is_new_file: bool = False
    is_deleted_file: bool = False
    is_renamed_file: bool = False


class ReviewInfo(BaseModel):
    """一次 PR/MR 的身份信息（org/repo 用于日志 key 与 token cache key）。"""

    platform: Literal["github", "gitlab"]
    org: str
    repo: str
    number: int
    head_sha: str
    url: str = ""
    changes: list[FileChange] = Field(default_factory=list)

    def changed_paths(self) -> list[str]:
        return [c.path for c in self.changes if not c.is_deleted_file]
