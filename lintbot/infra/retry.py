from __future__ import annotations

"""
网络调用的重试（指数退避）。

约定：
- 最多 `attempts` 次；第 N 次失败后等待 initial_delay * 2^(N-1) 秒
- `OperationCancelledError` 直接向上抛，不重试、不 sleep
- 退避期间的 sleep 由 `EventContext.sleep` 完成，可被取消信号打断
- 次数用尽抛 `RetriesExhaustedError`（`__cause__` 为最后一次错误）
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from lintbot.infra.context import EventContext
from lintbot.infra.context import OperationCancelledError

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 1.0


class RetriesExhaustedError(RuntimeError):
    """重试次数用尽。"""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts


async def retry_with_backoff(
    ctx: EventContext,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str = "operation",
    attempts: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
) -> T:
    if attempts <= 0:
        raise ValueError("attempts must be > 0")

    delay = initial_delay
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        ctx.raise_if_cancelled()
        try:
            return await operation()
        except OperationCancelledError:
            raise
        except Exception as exc:
            last_error = exc
            ctx.logger.warning(f"{name} failed (attempt {attempt}/{attempts}): {exc}")
        if attempt < attempts:
            await ctx.sleep(delay)
            delay *= 2

    raise RetriesExhaustedError(operation=name, attempts=attempts) from last_error
