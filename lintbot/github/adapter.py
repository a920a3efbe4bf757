"""
GitHub -> Review domain adapter。

职责：
- 将 GitHub PR files/patch 转为平台无关的 `ReviewInfo` + `HunkSet`
- `GitHubReviewProvider`：用 GitHubClient 实现 `ReviewProvider`
"""

from __future__ import annotations

from datetime import datetime, timezone

from lintbot.github.client import GitHubClient
from lintbot.github.schemas import GitHubPullRequestFile
from lintbot.github.schemas import GitHubPullRequestWebhookEvent
from lintbot.infra.context import EventContext
from lintbot.review.hunks import HunkSet
from lintbot.review.hunks import build_hunk_set
from lintbot.review.models import FileChange
from lintbot.review.models import ReviewInfo
from lintbot.review.provider import CheckRunReport
from lintbot.review.provider import NewComment
from lintbot.review.provider import ProviderComment


def build_review_info_from_github_pull_request_files(
    event: GitHubPullRequestWebhookEvent,
    files: list[GitHubPullRequestFile],
) -> ReviewInfo:
    file_changes = [
        FileChange(
            path=f.filename,
            # 没有 patch 的文件（二进制/过大）没有可评论的行
            diff=f.patch or "",
            is_new_file=f.status == "added",
            is_deleted_file=f.status == "removed",
            is_renamed_file=f.status == "renamed",
        )
        for f in files
    ]
    return ReviewInfo(
        platform="github",
        org=event.repository.owner.login,
        repo=event.repository.name,
        number=event.pull_request.number,
        head_sha=event.pull_request.head.sha,
        url=event.pull_request.html_url,
        changes=file_changes,
    )


class GitHubReviewProvider:
    def __init__(self, client: GitHubClient, info: ReviewInfo, hunk_set: HunkSet | None = None) -> None:
        self._client = client
        self._info = info
        self._hunk_set = hunk_set if hunk_set is not None else build_hunk_set(info.changes)

    @property
    def info(self) -> ReviewInfo:
        return self._info

    @property
    def hunk_set(self) -> HunkSet:
        return self._hunk_set

    @property
    def supports_check_runs(self) -> bool:
        return True

    async def list_comments(self, ctx: EventContext) -> list[ProviderComment]:
        comments = await self._client.list_review_comments(self._info.org, self._info.repo, self._info.number)
        ctx.logger.debug(f"fetched {len(comments)} review comment(s) from GitHub")
        # outdated 的评论没有 line，不参与匹配（也不会被删除）
        return [
            ProviderComment(id=str(c.id), path=c.path, line=c.line, body=c.body)
            for c in comments
            if c.line is not None
        ]

    async def create_comment(self, ctx: EventContext, comment: NewComment) -> None:
        created = await self._client.create_review_comment(
            owner=self._info.org,
            repo=self._info.repo,
            pull_number=self._info.number,
            commit_id=self._info.head_sha,
            path=comment.path,
            line=comment.line,
            start_line=comment.start_line,
            body=comment.body,
        )
        ctx.logger.info(f"created comment {created.id} on {comment.path}:{comment.line}")

    async def delete_comment(self, ctx: EventContext, comment: ProviderComment) -> None:
        await self._client.delete_review_comment(self._info.org, self._info.repo, int(comment.id))
        ctx.logger.info(f"deleted comment {comment.id} on {comment.path}:{comment.line}")

    async def create_check_run(self, ctx: EventContext, report: CheckRunReport) -> None:
        annotations = []
        for a in report.annotations:
            # GitHub 不接受 0 作为列号
            exclude = {"start_column", "end_column"} if not a.start_column else set()
            annotations.append(a.model_dump(exclude=exclude))
        payload = {
            "name": report.name,
            "head_sha": report.head_sha,
            "status": "completed",
            "conclusion": report.conclusion,
            "completed_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "output": {"title": report.title, "summary": report.summary, "annotations": annotations},
        }
        check_run_id = await self._client.create_check_run(self._info.org, self._info.repo, payload)
        ctx.logger.info(f"created check run {check_run_id} for {report.name}")


async def load_github_review_provider(
    client: GitHubClient,
    event: GitHubPullRequestWebhookEvent,
) -> GitHubReviewProvider:
    files = await client.list_pull_request_files(
        owner=event.repository.owner.login,
        repo=event.repository.name,
        pull_number=event.pull_request.number,
    )
    info = build_review_info_from_github_pull_request_files(event=event, files=files)
    return GitHubReviewProvider(client=client, info=info)
