"""
“意外输出”通知。

linter 输出里解析不了的行说明工具的输出格式可能变了：不会中断流程，但要让运维看到。
- 总是记 warning 日志
- 配置了 NOTIFY_WEBHOOK_URL 时再 POST 一份纯文本（失败只记日志）
"""

from __future__ import annotations

import httpx

from lintbot.infra.context import EventContext
from lintbot.lint.parser import limit_join

UNEXPECTED_SUMMARY_LIMIT = 1000


def build_unexpected_message(linter: str, org: str, repo: str, number: int, lines: list[str], log_url: str = "") -> str:
    text = f"[{linter}] unexpected output in {org}/{repo}#{number}:\n"
    text += limit_join(lines, UNEXPECTED_SUMMARY_LIMIT)
    if log_url:
        text += f"full log: {log_url}\n"
    return text


class Notifier:
    def __init__(self, http_client: httpx.AsyncClient | None = None, webhook_url: str | None = None) -> None:
        self._http_client = http_client
        self._webhook_url = webhook_url

    async def notify(self, ctx: EventContext, message: str) -> None:
        ctx.logger.warning(message)
        if not self._webhook_url or self._http_client is None:
            return
        try:
            response = await self._http_client.post(
                self._webhook_url,
                content=message.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )
        except httpx.HTTPError as exc:
            ctx.logger.error(f"failed to send notification: {exc}")
            return
        if response.status_code >= 400:
            ctx.logger.error(f"notification webhook error {response.status_code}: {response.text}")
