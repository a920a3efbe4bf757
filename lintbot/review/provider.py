"""
Review provider 契约（GitHub / GitLab 都实现它）。

reconciliation 只依赖这里的接口与模型，不关心具体平台：
- list_comments：当前 review 上机器人发过的行内评论（含 id/path/line/body）
- create_comment / delete_comment：单条增删（删除已不存在的评论视为成功）
- create_check_run：check run 风格的汇总报告（只有 GitHub 支持）
"""

from __future__ import annotations

from typing import Literal, Protocol

from pydantic import BaseModel, Field

from lintbot.infra.context import EventContext
from lintbot.review.hunks import HunkSet
from lintbot.review.models import ReviewInfo


class ProviderAPIError(RuntimeError):
    """平台 API 返回了 >= 400。"""

    def __init__(self, platform: str, status_code: int, body: str) -> None:
        super().__init__(f"{platform} API error {status_code}: {body}")
        self.platform = platform
        self.status_code = status_code
        self.body = body


class ProviderComment(BaseModel):
    """平台上已存在的一条行内评论（id 对 reconciliation 是不透明的）。"""

    id: str
    path: str
    line: int
    body: str


class NewComment(BaseModel):
    path: str
    line: int
    start_line: int = 0
    body: str


class CheckRunAnnotation(BaseModel):
    path: str
    start_line: int
    end_line: int
    start_column: int = 0
    end_column: int = 0
    annotation_level: Literal["notice", "warning", "failure"] = "warning"
    title: str
    message: str


class CheckRunReport(BaseModel):
    """一次完整的 check run（status 固定为 completed）。"""

    name: str
    head_sha: str
    title: str
    summary: str
    conclusion: Literal["success", "failure"]
    annotations: list[CheckRunAnnotation] = Field(default_factory=list)


class ReviewProvider(Protocol):
    @property
    def info(self) -> ReviewInfo: ...

    @property
    def hunk_set(self) -> HunkSet: ...

    @property
    def supports_check_runs(self) -> bool: ...

    async def list_comments(self, ctx: EventContext) -> list[ProviderComment]: ...

    async def create_comment(self, ctx: EventContext, comment: NewComment) -> None: ...

    async def delete_comment(self, ctx: EventContext, comment: ProviderComment) -> None: ...

    async def create_check_run(self, ctx: EventContext, report: CheckRunReport) -> None: ...
