from __future__ import annotations

import anyio
import pytest

from lintbot.infra.context import OperationCancelledError
from lintbot.infra.context import new_event_context
from lintbot.infra.retry import RetriesExhaustedError
from lintbot.infra.retry import retry_with_backoff


@pytest.mark.anyio
async def test_retry_succeeds_on_fifth_attempt() -> None:
    ctx = new_event_context("retry")
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 5:
            raise RuntimeError("temporary")
        return "ok"

    assert await retry_with_backoff(ctx, flaky, initial_delay=0.001) == "ok"
    assert calls == 5


@pytest.mark.anyio
async def test_retry_exhausted_keeps_last_error() -> None:
    ctx = new_event_context("retry")
    calls = 0

    async def always_fails() -> None:
        nonlocal calls
        calls += 1
        raise ValueError(f"boom {calls}")

    with pytest.raises(RetriesExhaustedError) as exc_info:
        await retry_with_backoff(ctx, always_fails, name="create comment", attempts=3, initial_delay=0.001)
    assert calls == 3
    assert exc_info.value.attempts == 3
    assert str(exc_info.value.__cause__) == "boom 3"


@pytest.mark.anyio
async def test_retry_with_cancelled_context_returns_immediately() -> None:
    ctx = new_event_context("retry")
    ctx.cancel()
    calls = 0

    async def op() -> None:
        nonlocal calls
        calls += 1

    with pytest.raises(OperationCancelledError):
        # 如果 sleep 了 1000 秒测试就会卡住
        await retry_with_backoff(ctx, op, initial_delay=1000)
    assert calls == 0


@pytest.mark.anyio
async def test_retry_does_not_retry_cancellation() -> None:
    ctx = new_event_context("retry")
    calls = 0

    async def op() -> None:
        nonlocal calls
        calls += 1
        raise OperationCancelledError("stop")

    with pytest.raises(OperationCancelledError):
        await retry_with_backoff(ctx, op, initial_delay=1000)
    assert calls == 1


@pytest.mark.anyio
async def test_cancel_interrupts_backoff_sleep() -> None:
    ctx = new_event_context("retry")

    async def fails_then_cancels() -> None:
        ctx.cancel()
        raise RuntimeError("temporary")

    with pytest.raises(OperationCancelledError):
        await retry_with_backoff(ctx, fails_then_cancels, initial_delay=1000)


def test_event_context_logger_prefixes_event_id(caplog: pytest.LogCaptureFixture) -> None:
    ctx = new_event_context("evt-1")
    with caplog.at_level("INFO", logger="lintbot.event"):
        ctx.logger.info("hello")
    assert "[evt-1] hello" in caplog.text


@pytest.mark.anyio
async def test_cancellable_interrupts_wait_in_progress() -> None:
    ctx = new_event_context("cancel")

    async def cancel_soon() -> None:
        await anyio.sleep(0.05)
        ctx.cancel()

    async with anyio.create_task_group() as tg:
        tg.start_soon(cancel_soon)
        with pytest.raises(OperationCancelledError):
            with ctx.cancellable():
                await anyio.sleep(10)

    # 已取消的 context 不再进入新的等待
    with pytest.raises(OperationCancelledError):
        with ctx.cancellable():
            pass


@pytest.mark.anyio
async def test_cancellable_passes_through_other_errors() -> None:
    ctx = new_event_context("cancel")
    with pytest.raises(TimeoutError):
        with ctx.cancellable(), anyio.fail_after(0.01):
            await anyio.sleep(1)
    assert not ctx.cancelled
