"""
本地进程 Runner。

- 在 working_dir 下以子进程执行脚本，stdout/stderr 合并
- 通过环境变量 `ARTIFACT` 暴露一个临时目录；工具往里写了非空文件时，文件内容优先于进程输出
  （有些工具只通过文件输出结构化结果）
- 进程非 0 退出是预期行为（发现问题的 linter 通常会“失败”），只记日志
- 超时或事件被取消时子进程会被 kill
"""

from __future__ import annotations

import os
import subprocess
import tempfile

import anyio

from lintbot.infra.context import EventContext
from lintbot.runner.base import ARTIFACT_ENV
from lintbot.runner.base import ExecutionRequest
from lintbot.runner.base import ExecutionResult
from lintbot.runner.base import RunnerError
from lintbot.runner.base import RunnerTimeoutError
from lintbot.runner.base import build_script


class LocalRunner:
    async def prepare(self, ctx: EventContext, request: ExecutionRequest) -> None:
        return None

    async def run(self, ctx: EventContext, request: ExecutionRequest) -> ExecutionResult:
        ctx.raise_if_cancelled()
        shell, script = build_script(request.command, request.args)
        ctx.logger.info(f"[{request.name}] script content:\n{script}")

        with tempfile.TemporaryDirectory(prefix="artifact") as artifact_dir:
            env = dict(os.environ)
            env[ARTIFACT_ENV] = artifact_dir
            env.update(request.environment)

            ctx.logger.info(f"[{request.name}] run command: {shell}, workDir: {request.working_dir}")
            try:
                with ctx.cancellable(), anyio.fail_after(request.timeout_seconds):
                    completed = await anyio.run_process(
                        [*shell, script],
                        cwd=request.working_dir,
                        env=env,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.STDOUT,
                        check=False,
                    )
            except TimeoutError as exc:
                raise RunnerTimeoutError(f"{request.name} timed out after {request.timeout_seconds}s") from exc
            except OSError as exc:
                raise RunnerError(f"failed to start {request.name}: {exc}") from exc

            if completed.returncode != 0:
                ctx.logger.warning(f"[{request.name}] exited with code {completed.returncode}, mark and continue")

            output = completed.stdout or b""
            artifact = read_artifact_dir(artifact_dir)
            if artifact:
                ctx.logger.debug(f"[{request.name}] artifact files used instead of process output")
                output = artifact

        return ExecutionResult.from_bytes(script=script, data=output, exit_code=completed.returncode)


def read_artifact_dir(artifact_dir: str) -> bytes:
    """按文件名顺序拼接目录下的非空普通文件（换行分隔）；读取失败视为基础设施错误。"""
    chunks: list[bytes] = []
    try:
        names = sorted(os.listdir(artifact_dir))
        for name in names:
            path = os.path.join(artifact_dir, name)
            if not os.path.isfile(path):
                continue
            with open(path, "rb") as f:
                content = f.read()
            if content:
                chunks.append(content)
    except OSError as exc:
        raise RunnerError(f"failed to read artifact dir {artifact_dir}: {exc}") from exc
    return b"\n".join(chunks)
