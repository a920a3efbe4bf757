"""
审计日志存储。

每次 linter 运行写一份文本：实际执行的脚本 + 原始输出，key 为 `<linter>/<org>/<repo>/<event_id>`。
只被 `/view/{key}` 读取，写失败不影响 review 流程（由调用方记日志）。
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Protocol

import anyio


class LogNotFoundError(KeyError):
    pass


class LogStorage(Protocol):
    async def write(self, key: str, content: bytes) -> None: ...

    async def read(self, key: str) -> bytes: ...


def build_log_key(linter: str, org: str, repo: str, event_id: str) -> str:
    return f"{linter}/{org}/{repo}/{event_id}"


def format_audit_log(event_id: str, script: str, output: bytes, now: datetime | None = None) -> bytes:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    header = f"[{ts}][{event_id}] run script:\n{script}\n[{ts}][{event_id}] output:\n"
    return header.encode("utf-8") + output + b"\n"


class LocalLogStorage:
    """本地目录实现：key 直接映射为 root_dir 下的相对路径。"""

    def __init__(self, root_dir: str) -> None:
        self._root_dir = os.path.abspath(root_dir)

    def _path(self, key: str) -> anyio.Path:
        path = os.path.abspath(os.path.join(self._root_dir, key))
        if not key or not path.startswith(self._root_dir + os.sep):
            raise ValueError(f"invalid log key: {key}")
        return anyio.Path(path)

    async def write(self, key: str, content: bytes) -> None:
        path = self._path(key)
        await path.parent.mkdir(parents=True, exist_ok=True)
        await path.write_bytes(content)

    async def read(self, key: str) -> bytes:
        path = self._path(key)
        if not await path.is_file():
            raise LogNotFoundError(key)
        return await path.read_bytes()
