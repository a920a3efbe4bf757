"""
GitLab -> Review domain adapter。

职责：
- 将 GitLab API 的 changes/diff schema 转换为平台无关的 `ReviewInfo` + `HunkSet`
- `GitLabReviewProvider`：用 discussions（带 position）实现行内评论
"""

from __future__ import annotations

from lintbot.gitlab.client import GitLabClient
from lintbot.gitlab.schemas import GitLabDiffRef
from lintbot.gitlab.schemas import GitLabMergeRequestChanges
from lintbot.gitlab.schemas import GitLabMergeRequestWebhookEvent
from lintbot.infra.context import EventContext
from lintbot.review.hunks import HunkSet
from lintbot.review.hunks import build_hunk_set
from lintbot.review.models import FileChange
from lintbot.review.models import ReviewInfo
from lintbot.review.provider import CheckRunReport
from lintbot.review.provider import NewComment
from lintbot.review.provider import ProviderComment


def build_review_info_from_gitlab_changes(
    event: GitLabMergeRequestWebhookEvent,
    head_sha: str,
    changes: GitLabMergeRequestChanges,
) -> ReviewInfo:
    file_changes = [
        FileChange(
            path=c.new_path,
            diff=c.diff,
            is_new_file=c.new_file,
            is_deleted_file=c.deleted_file,
            is_renamed_file=c.renamed_file,
        )
        for c in changes.changes
    ]
    return ReviewInfo(
        platform="gitlab",
        org=event.project.namespace,
        repo=event.project.name,
        number=event.object_attributes.iid,
        head_sha=head_sha,
        url=event.object_attributes.url,
        changes=file_changes,
    )


class GitLabReviewProvider:
    def __init__(
        self,
        client: GitLabClient,
        project_id: int,
        info: ReviewInfo,
        diff_refs: GitLabDiffRef,
        old_paths: dict[str, str] | None = None,
        hunk_set: HunkSet | None = None,
    ) -> None:
        self._client = client
        self._project_id = project_id
        self._info = info
        self._diff_refs = diff_refs
        self._old_paths = dict(old_paths or {})
        self._hunk_set = hunk_set if hunk_set is not None else build_hunk_set(info.changes)

    @property
    def info(self) -> ReviewInfo:
        return self._info

    @property
    def hunk_set(self) -> HunkSet:
        return self._hunk_set

    @property
    def supports_check_runs(self) -> bool:
        return False

    async def list_comments(self, ctx: EventContext) -> list[ProviderComment]:
        notes = await self._client.list_merge_request_notes(self._project_id, self._info.number)
        comments: list[ProviderComment] = []
        for note in notes:
            # 普通评论没有 position，不属于任何 linter 的行内评论
            if note.position is None or note.position.new_path is None or note.position.new_line is None:
                continue
            comments.append(
                ProviderComment(id=str(note.id), path=note.position.new_path, line=note.position.new_line, body=note.body)
            )
        ctx.logger.debug(f"fetched {len(notes)} note(s) from GitLab, {len(comments)} positioned")
        return comments

    async def create_comment(self, ctx: EventContext, comment: NewComment) -> None:
        discussion = await self._client.create_merge_request_discussion(
            project_id=self._project_id,
            mr_iid=self._info.number,
            body=comment.body,
            diff_refs=self._diff_refs,
            new_path=comment.path,
            old_path=self._old_paths.get(comment.path, comment.path),
            new_line=comment.line,
        )
        ctx.logger.info(f"created discussion {discussion.id} on {comment.path}:{comment.line}")

    async def delete_comment(self, ctx: EventContext, comment: ProviderComment) -> None:
        await self._client.delete_merge_request_note(self._project_id, self._info.number, int(comment.id))
        ctx.logger.info(f"deleted note {comment.id} on {comment.path}:{comment.line}")

    async def create_check_run(self, ctx: EventContext, report: CheckRunReport) -> None:
        raise RuntimeError("GitLab does not support check runs")


async def load_gitlab_review_provider(
    client: GitLabClient,
    event: GitLabMergeRequestWebhookEvent,
    head_sha: str,
) -> GitLabReviewProvider:
    changes = await client.get_merge_request_changes(project_id=event.project.id, mr_iid=event.object_attributes.iid)
    info = build_review_info_from_gitlab_changes(event=event, head_sha=head_sha, changes=changes)
    return GitLabReviewProvider(
        client=client,
        project_id=event.project.id,
        info=info,
        diff_refs=changes.diff_refs,
        old_paths={c.new_path: c.old_path for c in changes.changes},
    )
