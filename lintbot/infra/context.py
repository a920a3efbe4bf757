"""
单次事件的执行上下文。

每个 webhook 事件创建一个 `EventContext`，显式地作为参数向下传递：
- event_id：关联 ID，写进每一行日志，便于按事件检索
- logger：带 event_id 前缀的 LoggerAdapter
- 取消信号：用于中断重试退避、Pod 轮询等等待点

注意：内部的 `anyio.Event` 延迟创建，因此可以在事件循环之外构造 context（测试里很常见）。
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import anyio

logger = logging.getLogger("lintbot.event")


class OperationCancelledError(RuntimeError):
    """事件被取消（例如服务关闭）。与普通的临时错误区分开，永远不会被重试。"""

    pass


class _EventLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['event_id']}] {msg}", kwargs


@dataclass(eq=False)
class EventContext:
    event_id: str
    logger: logging.LoggerAdapter = field(init=False)
    _cancelled: bool = field(default=False, init=False)
    _cancel_event: anyio.Event | None = field(default=None, init=False)
    _scopes: set[anyio.CancelScope] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self.logger = _EventLoggerAdapter(logger, {"event_id": self.event_id})

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        for scope in list(self._scopes):
            scope.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(f"event {self.event_id} cancelled")

    async def sleep(self, seconds: float) -> None:
        """可被取消信号打断的 sleep：取消时立即抛 `OperationCancelledError`。"""
        self.raise_if_cancelled()
        if self._cancel_event is None:
            self._cancel_event = anyio.Event()
        with anyio.move_on_after(seconds):
            await self._cancel_event.wait()
        self.raise_if_cancelled()

    @contextmanager
    def cancellable(self) -> Iterator[None]:
        """
        包住一段正在等待的操作（子进程、线程里的 SDK 调用）：取消信号到达时立即打断它，
        并抛 `OperationCancelledError`。子进程会被 kill；线程里的调用需要允许 abandon。
        """
        self.raise_if_cancelled()
        scope = anyio.CancelScope()
        self._scopes.add(scope)
        try:
            with scope:
                yield
        finally:
            self._scopes.discard(scope)
        if scope.cancelled_caught:
            raise OperationCancelledError(f"event {self.event_id} cancelled")


def new_event_context(event_id: str | None = None) -> EventContext:
    return EventContext(event_id=event_id or uuid.uuid4().hex)


class ActiveEvents:
    """正在处理中的事件集合；服务关闭时统一取消。"""

    def __init__(self) -> None:
        self._contexts: set[EventContext] = set()

    def add(self, ctx: EventContext) -> None:
        self._contexts.add(ctx)

    def discard(self, ctx: EventContext) -> None:
        self._contexts.discard(ctx)

    def cancel_all(self) -> int:
        contexts = list(self._contexts)
        for ctx in contexts:
            ctx.cancel()
        return len(contexts)
