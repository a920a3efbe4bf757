"""
评论收敛（reconciliation）。

每个 linter、每个 review 事件调用一次：
1. 拉取平台上已有的、以本 linter 前缀（`[name] `）开头的评论
2. 对每条新问题，找同 path、同 line、body 包含 message 的已有评论；找到则保留、不再新增
3. 没有被任何新问题认领的已有评论 -> 删除
4. 先删后增；每个网络调用单独走 retry_with_backoff

同一组问题跑两次，第二次不会产生任何增删调用。

check run 模式下没有增删：直接提交一次 completed 的 check run（annotation 最多 50 条）。
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from lintbot.infra.context import EventContext
from lintbot.infra.retry import DEFAULT_ATTEMPTS
from lintbot.infra.retry import DEFAULT_INITIAL_DELAY
from lintbot.infra.retry import retry_with_backoff
from lintbot.lint.models import Diagnostic
from lintbot.lint.models import DiagnosticGroup
from lintbot.lint.models import count_diagnostics
from lintbot.lint.models import iter_diagnostics
from lintbot.review.provider import CheckRunAnnotation
from lintbot.review.provider import CheckRunReport
from lintbot.review.provider import NewComment
from lintbot.review.provider import ProviderComment
from lintbot.review.provider import ReviewProvider

MAX_CHECK_RUN_ANNOTATIONS = 50

COMMENT_FOOTER = """<details>

If you have any questions about this comment, please contact the lintbot maintainers.

</details>"""

# (ctx, linter, diagnostic) -> 评论正文；用于给新评论附加 issue 引用 / 解释
BodyRenderer = Callable[[EventContext, str, Diagnostic], Awaitable[str]]


def linter_comment_prefix(linter: str) -> str:
    return f"[{linter}] "


def format_comment_body(linter: str, message: str, details: str = "") -> str:
    """`[linter] message` + footer；details 非空时放进 footer 的 <details> 块里。"""
    footer = COMMENT_FOOTER
    if details:
        footer = f"<details>\n\n{details.strip()}\n\n</details>"
    return f"{linter_comment_prefix(linter)}{message}\n{footer}"


async def default_body_renderer(ctx: EventContext, linter: str, diagnostic: Diagnostic) -> str:
    return format_comment_body(linter, diagnostic.message)


def filter_linter_comments(comments: list[ProviderComment], linter: str) -> list[ProviderComment]:
    prefix = linter_comment_prefix(linter)
    return [c for c in comments if c.body.startswith(prefix)]


@dataclass
class ReconciliationPlan:
    to_add: list[Diagnostic] = field(default_factory=list)
    to_delete: list[ProviderComment] = field(default_factory=list)
    kept: list[ProviderComment] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_add and not self.to_delete


def plan_reconciliation(diagnostics: DiagnosticGroup, existing: list[ProviderComment]) -> ReconciliationPlan:
    """纯计算：existing 应该已经按 linter 前缀过滤过。"""
    plan = ReconciliationPlan()
    valid_ids: set[str] = set()
    for file, items in diagnostics.items():
        for diagnostic in items:
            match = next(
                (
                    c
                    for c in existing
                    if c.path == file and c.line == diagnostic.line and diagnostic.message in c.body
                ),
                None,
            )
            if match is None:
                plan.to_add.append(diagnostic)
            else:
                valid_ids.add(match.id)

    for comment in existing:
        if comment.id in valid_ids:
            plan.kept.append(comment)
        else:
            plan.to_delete.append(comment)
    return plan


async def report_comments(
    ctx: EventContext,
    linter: str,
    diagnostics: DiagnosticGroup,
    provider: ReviewProvider,
    render_body: BodyRenderer | None = None,
    attempts: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
) -> ReconciliationPlan:
    render = render_body or default_body_renderer

    all_comments = await retry_with_backoff(
        ctx,
        lambda: provider.list_comments(ctx),
        name=f"[{linter}] list comments",
        attempts=attempts,
        initial_delay=initial_delay,
    )
    existing = filter_linter_comments(all_comments, linter)
    plan = plan_reconciliation(diagnostics, existing)
    ctx.logger.info(
        f"[{linter}] {count_diagnostics(diagnostics)} issue(s), {len(existing)} existing comment(s): "
        f"add {len(plan.to_add)}, delete {len(plan.to_delete)}, keep {len(plan.kept)}"
    )

    for comment in plan.to_delete:
        await retry_with_backoff(
            ctx,
            lambda comment=comment: provider.delete_comment(ctx, comment),
            name=f"[{linter}] delete comment {comment.id}",
            attempts=attempts,
            initial_delay=initial_delay,
        )

    for diagnostic in plan.to_add:
        body = await render(ctx, linter, diagnostic)
        new_comment = NewComment(
            path=diagnostic.file,
            line=diagnostic.line,
            start_line=diagnostic.start_line,
            body=body,
        )
        await retry_with_backoff(
            ctx,
            lambda new_comment=new_comment: provider.create_comment(ctx, new_comment),
            name=f"[{linter}] create comment on {diagnostic.file}:{diagnostic.line}",
            attempts=attempts,
            initial_delay=initial_delay,
        )
    return plan


def build_check_run_report(
    ctx: EventContext,
    linter: str,
    head_sha: str,
    diagnostics: DiagnosticGroup,
    log_url: str = "",
) -> CheckRunReport:
    annotations: list[CheckRunAnnotation] = []
    for diagnostic in iter_diagnostics(diagnostics):
        start = diagnostic.start_line or diagnostic.line
        annotations.append(
            CheckRunAnnotation(
                path=diagnostic.file,
                start_line=start,
                end_line=diagnostic.line,
                # GitHub 只允许单行 annotation 带列号
                start_column=diagnostic.column if start == diagnostic.line else 0,
                end_column=diagnostic.column if start == diagnostic.line else 0,
                title=linter,
                message=diagnostic.message,
            )
        )
    if len(annotations) > MAX_CHECK_RUN_ANNOTATIONS:
        ctx.logger.info(
            f"[{linter}] {len(annotations)} annotations, truncated to {MAX_CHECK_RUN_ANNOTATIONS}"
        )
        annotations = annotations[:MAX_CHECK_RUN_ANNOTATIONS]

    summary = f"[full log]({log_url})\n" if log_url else ""
    summary += "Issues reported by lintbot on the lines changed in this pull request."
    return CheckRunReport(
        name=linter,
        head_sha=head_sha,
        title=f"{linter} found {len(annotations)} issues related to your changes",
        summary=summary,
        conclusion="failure" if annotations else "success",
        annotations=annotations,
    )


async def report_check_run(
    ctx: EventContext,
    linter: str,
    diagnostics: DiagnosticGroup,
    provider: ReviewProvider,
    log_url: str = "",
    attempts: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
) -> CheckRunReport:
    report = build_check_run_report(ctx, linter, provider.info.head_sha, diagnostics, log_url=log_url)
    await retry_with_backoff(
        ctx,
        lambda: provider.create_check_run(ctx, report),
        name=f"[{linter}] create check run",
        attempts=attempts,
        initial_delay=initial_delay,
    )
    ctx.logger.info(f"[{linter}] check run created: {report.conclusion}, {len(report.annotations)} annotation(s)")
    return report
