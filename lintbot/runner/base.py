"""
Runner 抽象：在某种执行环境里跑一个 linter 命令。

约定：
- `prepare(ctx, request)`：一次性的就绪检查（拉镜像、检查集群权限），每次调用都必须安全（已就绪则 no-op）
- `run(ctx, request)`：返回 `ExecutionResult`（原始输出 + 实际执行的脚本），调用方负责 close
- 基础设施错误（起不来进程/容器/Job）抛 `RunnerError` 子类；被包装工具自身的非 0 退出码只记日志
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

from pydantic import BaseModel, Field

from lintbot.infra.context import EventContext

SHELLS = ("/bin/bash", "/bin/sh")
ARTIFACT_ENV = "ARTIFACT"


class RunnerError(RuntimeError):
    """执行环境层面的失败（对该 linter 致命）。"""

    pass


class RunnerTimeoutError(RunnerError):
    pass


class ImagePullError(RunnerError):
    pass


class PermissionDeniedError(RunnerError):
    """集群里没有创建 Job 的权限。不重试：需要外部介入。"""

    pass


class UnexpectedPodStatusError(RunnerError):
    pass


class DockerSpec(BaseModel):
    image: str
    # `src` 或 `src:dst`
    copy_ssh_key: str = ""


class KubernetesSpec(BaseModel):
    image: str
    namespace: str = "default"
    copy_ssh_key: str = ""
    pod_ready_timeout_seconds: float = 300.0
    lifetime_seconds: int = 3600


class ExecutionRequest(BaseModel):
    """单次 linter 调用的执行请求（不持久化）。"""

    name: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    working_dir: str
    environment: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 600.0
    docker: DockerSpec | None = None
    kubernetes: KubernetesSpec | None = None


@dataclass
class ExecutionResult:
    """
    一次执行的结果：合并后的 stdout/stderr 字节流 + 实际执行的脚本（用于审计日志）。

    output 归调用方独占；请用 `with result:` 或显式 `close()` 释放。
    """

    script: str
    output: BinaryIO = field(default_factory=io.BytesIO)
    exit_code: int | None = None

    @classmethod
    def from_bytes(cls, script: str, data: bytes, exit_code: int | None = None) -> ExecutionResult:
        return cls(script=script, output=io.BytesIO(data), exit_code=exit_code)

    def read(self) -> bytes:
        return self.output.read()

    def close(self) -> None:
        self.output.close()

    def __enter__(self) -> ExecutionResult:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Runner(Protocol):
    async def prepare(self, ctx: EventContext, request: ExecutionRequest) -> None: ...

    async def run(self, ctx: EventContext, request: ExecutionRequest) -> ExecutionResult: ...


def build_script(command: list[str], args: list[str], strict: bool = True) -> tuple[list[str], str]:
    """
    组装 (shell, script)。

    - command 以 /bin/bash 或 /bin/sh 开头：直接把它当 shell，script 只由 args 组成
    - 否则：用 `/bin/sh -c`，command 作为脚本第一行，args 接在后面
    """
    script = "set -e\n" if strict else ""
    if command and command[0] in SHELLS:
        shell = list(command)
    else:
        shell = ["/bin/sh", "-c"]
        if command:
            script += " ".join(command) + "\n"
    script += " ".join(args)
    return shell, script


def split_copy_spec(value: str) -> tuple[str, str]:
    """`src` -> (src, src)；`src:dst` -> (src, dst)。"""
    parts = value.split(":")
    if len(parts) == 1 and parts[0]:
        return parts[0], parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"invalid copy ssh key format: {value}")
