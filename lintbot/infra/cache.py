from __future__ import annotations

"""
进程内缓存（跨事件共享，读写锁保护）。

当前提供：
- `ReadWriteLock`：读者之间不互斥，写者独占
- `TTLCache`：带过期时间的 key -> value
- `TokenCache`：平台 API token，key 为 `"<platform>:<owner>"`，默认 55 分钟过期
- `IssueReferenceCache`：issue 引用内容，key 为 issue URL，默认 2 小时过期

这是事件之间唯一共享的可变状态。
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

import anyio

V = TypeVar("V")

TOKEN_TTL_SECONDS = 55 * 60
ISSUE_REFERENCE_TTL_SECONDS = 2 * 60 * 60


class Cache(Protocol[V]):
    """缓存接口协议（orchestrator/provider 只依赖它）。"""

    async def get(self, key: str) -> V | None: ...

    async def set(self, key: str, value: V) -> None: ...


class ReadWriteLock:
    """
    基于 anyio.Condition 的读写锁。

    Condition 延迟创建：缓存通常在事件循环启动前（应用装配时）构造。
    """

    def __init__(self) -> None:
        self._cond: anyio.Condition | None = None
        self._readers = 0
        self._writer = False

    def _condition(self) -> anyio.Condition:
        if self._cond is None:
            self._cond = anyio.Condition()
        return self._cond

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        cond = self._condition()
        async with cond:
            while self._writer:
                await cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with anyio.CancelScope(shield=True):
                async with cond:
                    self._readers -= 1
                    if self._readers == 0:
                        cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        cond = self._condition()
        async with cond:
            while self._writer or self._readers > 0:
                await cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with anyio.CancelScope(shield=True):
                async with cond:
                    self._writer = False
                    cond.notify_all()


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = ReadWriteLock()
        self._entries: dict[str, _Entry[V]] = {}

    async def get(self, key: str) -> V | None:
        async with self._lock.read():
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    async def set(self, key: str, value: V, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        async with self._lock.write():
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
            # 顺手清掉过期项，避免无限增长
            now = self._clock()
            for stale in [k for k, e in self._entries.items() if e.expires_at <= now]:
                del self._entries[stale]

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[V]]) -> V:
        """
        读不到时调用 loader 并写回。

        loader 在锁外执行：并发 miss 时可能被调用多次，以最后一次写入为准。
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        await self.set(key, value)
        return value

    def __len__(self) -> int:
        return len(self._entries)


class TokenCache(TTLCache[str]):
    def __init__(self, ttl_seconds: float = TOKEN_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)

    @staticmethod
    def key(platform: str, owner: str) -> str:
        return f"{platform}:{owner}"


class IssueReferenceCache(TTLCache[str]):
    def __init__(
        self,
        ttl_seconds: float = ISSUE_REFERENCE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
