"""
新评论的正文装饰：issue 引用 / LLM 解释。

- message 命中配置的 pattern：正文写成 `[message](issue_url)`，issue 内容放进 footer 的 <details>
  （issue 内容经 IssueReferenceCache 缓存 2 小时）
- 没命中且配置了 LLM：footer 里放一段 LLM 生成的解释
- 都没有：标准 footer

只影响新建的评论；已有评论的匹配仍然只看原始 message（装饰后的正文依然包含它）。
装饰失败只记日志，退回标准正文。
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

import httpx
from openai import OpenAIError

from lintbot.config import IssueReferenceRule
from lintbot.github.client import GitHubClient
from lintbot.infra.cache import IssueReferenceCache
from lintbot.infra.context import EventContext
from lintbot.lint.models import Diagnostic
from lintbot.llm.client import ChatMessage
from lintbot.llm.client import OpenAICompatLLMClient
from lintbot.review.provider import ProviderAPIError
from lintbot.review.reconcile import format_comment_body

_GITHUB_ISSUE_URL = re.compile(r"^https?://[^/]+/([^/]+)/([^/]+)/issues/(\d+)/?$")

_EXPLAIN_PROMPT = (
    "You are a senior engineer. Explain the following static analysis finding in a few sentences: "
    "what it means, why it matters, and how to fix it. Reply in markdown without headings."
)


class CommentDecorator:
    def __init__(
        self,
        rules: Mapping[str, Sequence[IssueReferenceRule]] | None = None,
        issue_cache: IssueReferenceCache | None = None,
        github_client: GitHubClient | None = None,
        llm_client: OpenAICompatLLMClient | None = None,
    ) -> None:
        self._rules = {
            linter: [(re.compile(rule.pattern), rule.url) for rule in linter_rules]
            for linter, linter_rules in (rules or {}).items()
        }
        self._issue_cache = issue_cache or IssueReferenceCache()
        self._github_client = github_client
        self._llm_client = llm_client

    def match_reference(self, linter: str, message: str) -> str | None:
        for pattern, url in self._rules.get(linter, []):
            if pattern.search(message):
                return url
        return None

    async def render(self, ctx: EventContext, linter: str, diagnostic: Diagnostic) -> str:
        url = self.match_reference(linter, diagnostic.message)
        if url is not None:
            details = await self._issue_details(ctx, url)
            return format_comment_body(linter, f"[{diagnostic.message}]({url})", details=details)
        if self._llm_client is not None:
            details = await self._explain(ctx, self._llm_client, linter, diagnostic)
            return format_comment_body(linter, diagnostic.message, details=details)
        return format_comment_body(linter, diagnostic.message)

    async def _issue_details(self, ctx: EventContext, url: str) -> str:
        cached = await self._issue_cache.get(url)
        if cached is not None:
            return cached
        match = _GITHUB_ISSUE_URL.match(url)
        if match is None or self._github_client is None:
            return ""
        owner, repo, number = match.group(1), match.group(2), int(match.group(3))
        try:
            issue = await self._github_client.get_issue(owner=owner, repo=repo, number=number)
        except (ProviderAPIError, httpx.HTTPError) as exc:
            ctx.logger.warning(f"failed to fetch issue reference {url}: {exc}")
            return ""
        details = f"**{issue.title}**\n\n{issue.body or ''}".strip()
        await self._issue_cache.set(url, details)
        return details

    async def _explain(
        self,
        ctx: EventContext,
        llm_client: OpenAICompatLLMClient,
        linter: str,
        diagnostic: Diagnostic,
    ) -> str:
        messages = [
            ChatMessage(role="system", content=_EXPLAIN_PROMPT),
            ChatMessage(role="user", content=f"linter: {linter}\nfile: {diagnostic.file}\nmessage: {diagnostic.message}"),
        ]
        try:
            explanation = await llm_client.complete_text(messages)
        except (OpenAIError, httpx.HTTPError, RuntimeError) as exc:
            ctx.logger.warning(f"failed to explain {linter} issue: {exc}")
            return ""
        return f"**Explanation**\n\n{explanation.strip()}"
