"""
LLM Client（基于 OpenAI SDK，OpenAI-compatible API）。

只服务于一个可选功能：给新评论附加一段问题解释。
- 解释只是锦上添花：回答限制长度，出错直接抛，由调用方退回标准评论正文
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 400


class ChatMessage(BaseModel):
    role: str
    content: str


def _normalize_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    return normalized if normalized.endswith("/v1") else f"{normalized}/v1"


class OpenAICompatLLMClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        model: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """
        - base_url: OpenAI-compatible base URL（末尾 /v1 可省略）
        - http_client: 复用 httpx.AsyncClient 连接池
        - max_tokens: 单次回答上限（评论 footer 里放不下长篇大论）
        """
        self._model = model
        self._max_tokens = max_tokens
        self._client = AsyncOpenAI(api_key=api_key, base_url=_normalize_base_url(base_url), http_client=http_client)

    async def complete_text(self, messages: Sequence[ChatMessage]) -> str:
        logger.debug(f"LLM request: model={self._model}, {len(messages)} message(s)")
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[m.model_dump() for m in messages],
                max_tokens=self._max_tokens,
            )
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.error(f"LLM call failed: {exc}")
            raise

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RuntimeError("LLM returned empty content")
        logger.debug(f"LLM response: {len(content)} chars")
        return content
