"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（严格校验环境变量 + linters YAML）
- 组装外部依赖（HTTP Client / 缓存 / Runner / 存储 / 通知 / 可选 LLM）
- 装配路由（health + 审计日志查看 + GitHub/GitLab webhook）

注意：
- 业务流程不写在这里（由 `review/orchestrator.py` 负责）
- `httpx.AsyncClient` 会被复用（避免每个请求新建连接）
- 关闭时取消所有进行中的事件：退避等待、Pod 轮询会立即中止
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.responses import PlainTextResponse

from lintbot.config import AppConfig
from lintbot.config import load_config_from_env
from lintbot.config import load_linters_config
from lintbot.github.client import GitHubClient
from lintbot.github.webhook import build_github_webhook_router
from lintbot.gitlab.webhook import build_gitlab_webhook_router
from lintbot.infra.cache import IssueReferenceCache
from lintbot.infra.cache import TokenCache
from lintbot.infra.context import ActiveEvents
from lintbot.infra.notify import Notifier
from lintbot.infra.storage import LocalLogStorage
from lintbot.infra.storage import LogNotFoundError
from lintbot.lint.registry import build_default_registry
from lintbot.llm.client import OpenAICompatLLMClient
from lintbot.review.orchestrator import RunnerSelector
from lintbot.review.orchestrator import build_github_webhook_handler
from lintbot.review.orchestrator import build_gitlab_webhook_handler
from lintbot.review.orchestrator import build_review_orchestrator
from lintbot.review.references import CommentDecorator
from lintbot.runner.docker_runner import DockerRunner
from lintbot.runner.kubernetes_runner import KubernetesRunner
from lintbot.workspace.repo_sync import RepoSyncer

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_app(config: AppConfig | None = None) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""

    # 1) 配置：缺失会直接抛错，启动失败（这是期望行为）
    config = config or load_config_from_env(os.environ)
    configure_logging(config.log_level)
    linters = load_linters_config(config.linters_config_path)
    registry = build_default_registry(custom=((name, cfg.languages) for name, cfg in linters.linters.items()))

    # 2) 跨事件共享的状态：HTTP 连接池、两个缓存、活跃事件集合
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
    token_cache = TokenCache()
    issue_cache = IssueReferenceCache()
    active_events = ActiveEvents()

    github_client: GitHubClient | None = None
    if config.github is not None:
        github_client = GitHubClient(
            api_base_url=str(config.github.api_base_url).rstrip("/"),
            token=config.github.token,
            http_client=http_client,
            token_cache=token_cache,
        )

    llm_client: OpenAICompatLLMClient | None = None
    if config.llm is not None:
        llm_client = OpenAICompatLLMClient(
            api_key=config.llm.api_key,
            base_url=str(config.llm.base_url).rstrip("/"),
            http_client=http_client,
            model=config.llm.model,
        )

    # 3) orchestrator：runner 按需创建，没配置 docker/kubernetes 的 linter 不会触碰它们
    decorator = CommentDecorator(
        rules=linters.issue_references,
        issue_cache=issue_cache,
        github_client=github_client,
        llm_client=llm_client,
    )
    storage = LocalLogStorage(root_dir=config.log_dir)
    orchestrator = build_review_orchestrator(
        registry=registry,
        linters=linters,
        runners=RunnerSelector(
            docker_factory=DockerRunner,
            kubernetes_factory=lambda: KubernetesRunner.from_kubeconfig(config.kubeconfig),
        ),
        storage=storage,
        notifier=Notifier(
            http_client=http_client,
            webhook_url=str(config.notify_webhook_url) if config.notify_webhook_url else None,
        ),
        render_body=decorator.render,
        server_url=config.server_url,
    )
    syncer = RepoSyncer(base_dir=config.workspace_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        cancelled = active_events.cancel_all()
        if cancelled:
            logger.warning(f"shutdown: cancelled {cancelled} in-flight review event(s)")
        await http_client.aclose()

    app = FastAPI(title="lintbot", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    @app.get("/view/{key:path}", response_class=PlainTextResponse)
    async def view_log(key: str) -> str:
        """查看某次 linter 运行的审计日志（脚本 + 原始输出）。"""
        try:
            content = await storage.read(key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except LogNotFoundError as exc:
            raise HTTPException(status_code=404, detail="log not found") from exc
        return content.decode("utf-8", errors="replace")

    if config.gitlab is not None:
        gitlab_handler = build_gitlab_webhook_handler(
            config=config.gitlab,
            http_client=http_client,
            orchestrator=orchestrator,
            syncer=syncer,
            active_events=active_events,
            token_cache=token_cache,
        )
        app.include_router(build_gitlab_webhook_router(config=config.gitlab, handler=gitlab_handler))
    if config.github is not None:
        github_handler = build_github_webhook_handler(
            config=config.github,
            http_client=http_client,
            orchestrator=orchestrator,
            syncer=syncer,
            active_events=active_events,
            token_cache=token_cache,
            github_client=github_client,
        )
        app.include_router(build_github_webhook_router(config=config.github, handler=github_handler))
    logger.info(f"lintbot started with linters: {', '.join(orchestrator.enabled_linters()) or '(none)'}")
    return app


def create_app() -> FastAPI:
    """uvicorn factory 入口：`uvicorn lintbot.main:create_app --factory`。"""
    return build_app()
