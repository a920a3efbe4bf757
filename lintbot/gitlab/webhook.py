"""
GitLab Webhook 接入层。

职责：
- 校验 `X-Gitlab-Token`（防止被随意调用）
- 解析 webhook payload -> Pydantic schema（类型安全）
- 过滤掉不关心的事件（只处理 MR open/update/reopen）
- 把业务 handler 放到后台任务里执行（真正的流程在 orchestrator 里）
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import APIRouter
from fastapi import BackgroundTasks
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from pydantic import ValidationError

from lintbot.config import GitLabConfig
from lintbot.gitlab.schemas import GitLabMergeRequestWebhookEvent

# (event, event_uuid) -> None
WebhookHandler = Callable[[GitLabMergeRequestWebhookEvent, str], Awaitable[None]]


def build_gitlab_webhook_router(config: GitLabConfig, handler: WebhookHandler) -> APIRouter:
    """创建 GitLab webhook 路由。"""
    router = APIRouter()

    @router.post("/gitlab/webhook")
    async def gitlab_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_gitlab_token: str = Header(alias="X-Gitlab-Token"),
        x_gitlab_event_uuid: str = Header(default="", alias="X-Gitlab-Event-UUID"),
    ) -> dict[str, str]:
        # 1) Webhook secret 校验（GitLab UI 里配置）
        if x_gitlab_token != config.webhook_secret:
            raise HTTPException(status_code=401, detail="Invalid webhook token")

        # 2) 只处理 MR 事件；其余 object_kind 直接忽略
        payload = await request.json()
        if not isinstance(payload, dict) or payload.get("object_kind") != "merge_request":
            return {"status": "ignored"}
        try:
            event = GitLabMergeRequestWebhookEvent.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid merge_request payload") from exc

        # 3) 只处理我们关心的 MR 动作
        if event.object_attributes.action not in ("open", "update", "reopen"):
            return {"status": "ignored"}

        # 4) 交给业务 handler（由 main 装配），不阻塞 webhook 响应
        background_tasks.add_task(handler, event, x_gitlab_event_uuid)
        return {"status": "accepted"}

    return router
