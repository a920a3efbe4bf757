"""
Review Orchestrator（核心流程编排）。

一个 review 事件的完整流程：
Webhook -> 拉取变更文件（构建 HunkSet）-> 检出代码 -> 逐个 linter：
run（Runner）-> 审计日志 -> 解析输出 -> 过滤到变更行 -> 按 report_type 收敛评论 / 提交 check run

约定：
- 同一事件内 linter **串行**执行：每个 linter 收敛评论时看到的评论集合只属于它自己
- 单个 linter 失败不影响其他 linter；取消（服务关闭）则整个事件停止
- 注册表、配置、runner 全部显式注入，测试可以各自构建
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

import httpx

from lintbot.config import GitHubConfig
from lintbot.config import GitLabConfig
from lintbot.config import LinterConfig
from lintbot.config import LintersConfig
from lintbot.github.adapter import load_github_review_provider
from lintbot.github.client import GitHubClient
from lintbot.github.schemas import GitHubPullRequestWebhookEvent
from lintbot.gitlab.adapter import load_gitlab_review_provider
from lintbot.gitlab.client import GitLabClient
from lintbot.gitlab.schemas import GitLabMergeRequestWebhookEvent
from lintbot.infra.cache import TokenCache
from lintbot.infra.context import ActiveEvents
from lintbot.infra.context import EventContext
from lintbot.infra.context import OperationCancelledError
from lintbot.infra.context import new_event_context
from lintbot.infra.notify import Notifier
from lintbot.infra.notify import build_unexpected_message
from lintbot.infra.retry import DEFAULT_ATTEMPTS
from lintbot.infra.retry import DEFAULT_INITIAL_DELAY
from lintbot.infra.retry import retry_with_backoff
from lintbot.infra.storage import LogStorage
from lintbot.infra.storage import build_log_key
from lintbot.infra.storage import format_audit_log
from lintbot.lint.models import Diagnostic
from lintbot.lint.models import DiagnosticGroup
from lintbot.lint.models import count_diagnostics
from lintbot.lint.models import group_diagnostics
from lintbot.lint.models import iter_diagnostics
from lintbot.lint.parser import parse_output
from lintbot.lint.registry import LinterRegistry
from lintbot.lint.registry import LinterSpec
from lintbot.review.hunks import filter_relevant
from lintbot.review.provider import ReviewProvider
from lintbot.review.reconcile import BodyRenderer
from lintbot.review.reconcile import report_check_run
from lintbot.review.reconcile import report_comments
from lintbot.runner.base import ExecutionRequest
from lintbot.runner.base import Runner
from lintbot.runner.local import LocalRunner
from lintbot.workspace.repo_sync import RepoSyncer
from lintbot.workspace.repo_sync import github_head_ref
from lintbot.workspace.repo_sync import gitlab_head_ref

LinterStatus = Literal["reported", "skipped", "failed"]


class RunnerSelector:
    """
    按 linter 配置选择执行环境：docker 镜像 > kubernetes 镜像 > 本地进程。

    docker/kubernetes runner 通过工厂延迟创建（没用到就不需要 Docker daemon / 集群配置）。
    """

    def __init__(
        self,
        local: Runner | None = None,
        docker_factory: Callable[[], Runner] | None = None,
        kubernetes_factory: Callable[[], Runner] | None = None,
    ) -> None:
        self._local = local or LocalRunner()
        self._docker_factory = docker_factory
        self._kubernetes_factory = kubernetes_factory
        self._docker: Runner | None = None
        self._kubernetes: Runner | None = None

    def select(self, config: LinterConfig) -> Runner:
        if config.docker is not None and config.docker.image:
            if self._docker is None:
                if self._docker_factory is None:
                    raise RuntimeError("docker runner is not available")
                self._docker = self._docker_factory()
            return self._docker
        if config.kubernetes is not None and config.kubernetes.image:
            if self._kubernetes is None:
                if self._kubernetes_factory is None:
                    raise RuntimeError("kubernetes runner is not available")
                self._kubernetes = self._kubernetes_factory()
            return self._kubernetes
        return self._local


@dataclass
class LinterOutcome:
    name: str
    status: LinterStatus
    detail: str = ""
    issues: int = 0


@dataclass
class ReviewOrchestrator:
    """Orchestrator 运行时依赖集合。"""

    registry: LinterRegistry
    linters: LintersConfig
    runners: RunnerSelector
    storage: LogStorage
    notifier: Notifier
    render_body: BodyRenderer | None = None
    server_url: str = ""
    retry_attempts: int = DEFAULT_ATTEMPTS
    retry_initial_delay: float = DEFAULT_INITIAL_DELAY

    def enabled_linters(self) -> list[str]:
        return [name for name, cfg in self.linters.linters.items() if cfg.enable]

    async def review(self, ctx: EventContext, provider: ReviewProvider, repo_dir: str) -> list[LinterOutcome]:
        outcomes: list[LinterOutcome] = []
        for name, config in self.linters.linters.items():
            ctx.raise_if_cancelled()
            try:
                outcome = await self.run_linter(ctx, provider, repo_dir, name, config)
            except OperationCancelledError:
                raise
            except Exception as exc:
                ctx.logger.exception(f"[{name}] failed: {exc}")
                outcome = LinterOutcome(name=name, status="failed", detail=str(exc))
            outcomes.append(outcome)
        summary = ", ".join(f"{o.name}={o.status}" for o in outcomes)
        ctx.logger.info(f"review finished for {provider.info.org}/{provider.info.repo}#{provider.info.number}: {summary}")
        return outcomes

    async def run_linter(
        self,
        ctx: EventContext,
        provider: ReviewProvider,
        repo_dir: str,
        name: str,
        config: LinterConfig,
    ) -> LinterOutcome:
        if not config.enable:
            return LinterOutcome(name=name, status="skipped", detail="disabled")

        spec = self.registry.get(name) if name in self.registry else LinterSpec(name=name)
        if config.languages:
            spec = LinterSpec(name=spec.name, line_parser=spec.line_parser, languages=tuple(config.languages))
        if not spec.is_related(provider.info.changed_paths()):
            ctx.logger.info(f"[{name}] no related files changed, skip")
            return LinterOutcome(name=name, status="skipped", detail="no related files")

        request = ExecutionRequest(
            name=name,
            command=config.command,
            args=config.args,
            working_dir=os.path.join(repo_dir, config.work_dir) if config.work_dir else repo_dir,
            environment=config.env,
            timeout_seconds=config.timeout_seconds,
            docker=config.docker,
            kubernetes=config.kubernetes,
        )
        runner = self.runners.select(config)
        result = await runner.run(ctx, request)
        with result:
            output = result.read()
            script = result.script

        info = provider.info
        log_key = build_log_key(name, info.org, info.repo, ctx.event_id)
        await self._write_audit_log(ctx, log_key, script, output)
        log_url = f"{self.server_url}/view/{log_key}" if self.server_url else ""

        parsed = parse_output(output, spec.line_parser)
        if parsed.unexpected:
            message = build_unexpected_message(name, info.org, info.repo, info.number, parsed.unexpected, log_url)
            await self.notifier.notify(ctx, message)

        diagnostics = normalize_paths(parsed.diagnostics, repo_dir)
        relevant = filter_relevant(diagnostics, provider.hunk_set)
        ctx.logger.info(
            f"[{name}] {count_diagnostics(diagnostics)} issue(s) found, {count_diagnostics(relevant)} related to the change"
        )
        await self._report(ctx, provider, name, config, relevant, log_url)
        return LinterOutcome(name=name, status="reported", issues=count_diagnostics(relevant))

    async def _report(
        self,
        ctx: EventContext,
        provider: ReviewProvider,
        name: str,
        config: LinterConfig,
        diagnostics: DiagnosticGroup,
        log_url: str,
    ) -> None:
        if config.report_type == "quiet":
            for d in iter_diagnostics(diagnostics):
                ctx.logger.info(f"[{name}] {d.file}:{d.line}:{d.column}: {d.message}")
            return

        if config.report_type == "github_check_run":
            if provider.supports_check_runs:
                await report_check_run(
                    ctx,
                    name,
                    diagnostics,
                    provider,
                    log_url=log_url,
                    attempts=self.retry_attempts,
                    initial_delay=self.retry_initial_delay,
                )
                return
            ctx.logger.warning(f"[{name}] {provider.info.platform} does not support check runs, report as comments")

        await report_comments(
            ctx,
            name,
            diagnostics,
            provider,
            render_body=self.render_body,
            attempts=self.retry_attempts,
            initial_delay=self.retry_initial_delay,
        )

    async def _write_audit_log(self, ctx: EventContext, key: str, script: str, output: bytes) -> None:
        try:
            await self.storage.write(key, format_audit_log(ctx.event_id, script, output))
        except (OSError, ValueError) as exc:
            ctx.logger.error(f"failed to write audit log {key}: {exc}")


def normalize_paths(diagnostics: DiagnosticGroup, repo_dir: str) -> DiagnosticGroup:
    """linter 可能输出 `./a.go` 或绝对路径；统一成仓库内相对路径，才能和 diff 的路径对上。"""
    prefix = repo_dir.rstrip("/") + "/"

    def _relative(path: str) -> str:
        if path.startswith(prefix):
            path = path[len(prefix) :]
        while path.startswith("./"):
            path = path[2:]
        return path

    normalized: list[Diagnostic] = []
    for d in iter_diagnostics(diagnostics):
        path = _relative(d.file)
        normalized.append(d if path == d.file else d.model_copy(update={"file": path}))
    return group_diagnostics(normalized)


def build_review_orchestrator(
    registry: LinterRegistry,
    linters: LintersConfig,
    runners: RunnerSelector,
    storage: LogStorage,
    notifier: Notifier,
    render_body: BodyRenderer | None = None,
    server_url: str = "",
) -> ReviewOrchestrator:
    """创建 orchestrator（所有依赖显式注入）。"""
    return ReviewOrchestrator(
        registry=registry,
        linters=linters,
        runners=runners,
        storage=storage,
        notifier=notifier,
        render_body=render_body,
        server_url=server_url,
    )


async def _run_event(
    ctx: EventContext,
    active_events: ActiveEvents,
    body: Callable[[], Awaitable[None]],
) -> None:
    """后台任务的最外层：登记/注销活跃事件，记录失败（这里是错误的终点）。"""
    active_events.add(ctx)
    try:
        await body()
    except OperationCancelledError:
        ctx.logger.warning("review cancelled")
    except Exception as exc:
        ctx.logger.exception(f"review failed: {exc}")
    finally:
        active_events.discard(ctx)


def build_github_webhook_handler(
    config: GitHubConfig,
    http_client: httpx.AsyncClient,
    orchestrator: ReviewOrchestrator,
    syncer: RepoSyncer,
    active_events: ActiveEvents,
    token_cache: TokenCache | None = None,
    github_client: GitHubClient | None = None,
) -> Callable[[GitHubPullRequestWebhookEvent, str], Awaitable[None]]:
    """
    装配 GitHub webhook handler：
    - 把外部依赖（GitHubClient / RepoSyncer）和业务编排（orchestrator）绑定起来
    - 返回一个 `async def handle(event, delivery_id)` 给 webhook 路由调用
    """
    client = github_client or GitHubClient(
        api_base_url=str(config.api_base_url).rstrip("/"),
        token=config.token,
        http_client=http_client,
        token_cache=token_cache,
    )

    async def handle(event: GitHubPullRequestWebhookEvent, delivery_id: str) -> None:
        ctx = new_event_context(delivery_id or None)

        async def body() -> None:
            if not orchestrator.enabled_linters():
                ctx.logger.info("no linters enabled, skip")
                return
            pr = event.pull_request
            ctx.logger.info(f"review {event.repository.full_name}#{pr.number} at {pr.head.sha}")
            provider = await retry_with_backoff(
                ctx,
                lambda: load_github_review_provider(client=client, event=event),
                name="list pull request files",
                attempts=orchestrator.retry_attempts,
                initial_delay=orchestrator.retry_initial_delay,
            )
            async with syncer.workspace(
                ctx,
                repo_name=event.repository.name,
                clone_url=event.repository.clone_url,
                head_ref=github_head_ref(pr.number),
                head_sha=pr.head.sha,
                token=config.token,
                token_user="x-access-token",
            ) as repo_dir:
                await orchestrator.review(ctx, provider, repo_dir)

        await _run_event(ctx, active_events, body)

    return handle


def build_gitlab_webhook_handler(
    config: GitLabConfig,
    http_client: httpx.AsyncClient,
    orchestrator: ReviewOrchestrator,
    syncer: RepoSyncer,
    active_events: ActiveEvents,
    token_cache: TokenCache | None = None,
    gitlab_client: GitLabClient | None = None,
) -> Callable[[GitLabMergeRequestWebhookEvent, str], Awaitable[None]]:
    """装配 GitLab webhook handler（与 GitHub 相同的流程，评论走 discussions）。"""
    client = gitlab_client or GitLabClient(
        base_url=str(config.base_url).rstrip("/"),
        private_token=config.token,
        http_client=http_client,
        token_cache=token_cache,
    )

    async def handle(event: GitLabMergeRequestWebhookEvent, event_uuid: str) -> None:
        ctx = new_event_context(event_uuid or None)

        async def body() -> None:
            if not orchestrator.enabled_linters():
                ctx.logger.info("no linters enabled, skip")
                return
            head_sha = event.object_attributes.last_commit.get("id")
            if not isinstance(head_sha, str) or not head_sha:
                raise ValueError("Webhook payload missing object_attributes.last_commit.id")
            mr_iid = event.object_attributes.iid
            ctx.logger.info(f"review {event.project.path_with_namespace}!{mr_iid} at {head_sha}")
            provider = await retry_with_backoff(
                ctx,
                lambda: load_gitlab_review_provider(client=client, event=event, head_sha=head_sha),
                name="get merge request changes",
                attempts=orchestrator.retry_attempts,
                initial_delay=orchestrator.retry_initial_delay,
            )
            async with syncer.workspace(
                ctx,
                repo_name=event.project.name,
                clone_url=event.project.git_http_url,
                head_ref=gitlab_head_ref(mr_iid),
                head_sha=head_sha,
                token=config.token,
                token_user="oauth2",
            ) as repo_dir:
                await orchestrator.review(ctx, provider, repo_dir)

        await _run_event(ctx, active_events, body)

    return handle
