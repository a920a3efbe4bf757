"""
容器 Runner（Docker SDK）。

生命周期严格串行：确保镜像存在 -> 创建容器（绑定 working_dir）-> 启动 -> 等待退出 -> 读取输出。
任何一步失败都直接中止本次运行，不重试（拉镜像是幂等的，下次事件再来一遍即可）。

输出优先级：
1. `ARTIFACT` 目录里的非空文件（按文件名排序，每个文件前加 `---name---`）
2. 容器日志（stdout + stderr）

Docker SDK 是同步的，这里用 `anyio.to_thread.run_sync` 放到线程里执行。
"""

from __future__ import annotations

import io
import os
import secrets
import tarfile
from collections.abc import Callable
from typing import Any, TypeVar

import anyio
import docker
from docker.errors import DockerException
from docker.errors import ImageNotFound
from docker.errors import NotFound
from requests.exceptions import ReadTimeout
from requests.exceptions import RequestException

from lintbot.infra.context import EventContext
from lintbot.runner.base import ARTIFACT_ENV
from lintbot.runner.base import ExecutionRequest
from lintbot.runner.base import ExecutionResult
from lintbot.runner.base import ImagePullError
from lintbot.runner.base import RunnerError
from lintbot.runner.base import RunnerTimeoutError
from lintbot.runner.base import build_script
from lintbot.runner.base import split_copy_spec

T = TypeVar("T")


class DockerRunner:
    def __init__(self, client: Any | None = None) -> None:
        # client 实现 docker.DockerClient 的子集（images / containers），测试里传 fake
        self._client = client

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise RunnerError(f"failed to create docker client: {exc}") from exc
        return self._client

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await anyio.to_thread.run_sync(lambda: fn(*args, **kwargs))

    async def prepare(self, ctx: EventContext, request: ExecutionRequest) -> None:
        """镜像不存在时拉取。"""
        if request.docker is None or not request.docker.image:
            return None
        image = request.docker.image
        client = self._docker()
        try:
            await self._call(client.images.get, image)
            return None
        except ImageNotFound:
            pass
        except DockerException as exc:
            raise RunnerError(f"failed to inspect image {image}: {exc}") from exc

        ctx.logger.info(f"pulling image: {image}")
        try:
            await self._call(client.images.pull, image)
        except DockerException as exc:
            raise ImagePullError(f"failed to pull image {image}: {exc}") from exc
        return None

    async def run(self, ctx: EventContext, request: ExecutionRequest) -> ExecutionResult:
        if request.docker is None or not request.docker.image:
            raise RunnerError("docker image is not set")
        await self.prepare(ctx, request)
        ctx.raise_if_cancelled()

        environment, args = apply_artifact_dir(request.environment, request.args)
        # 容器内以其他用户身份访问挂载目录时，git 会拒绝操作
        args = [f"git config --global --add safe.directory {request.working_dir}\n", *args]
        shell, script = build_script(request.command, args)
        ctx.logger.info(f"[{request.name}] script content:\n{script}")

        client = self._docker()
        try:
            container = await self._call(
                client.containers.create,
                request.docker.image,
                command=[script],
                entrypoint=shell,
                environment=environment,
                working_dir=request.working_dir,
                volumes={request.working_dir: {"bind": request.working_dir, "mode": "rw"}},
                detach=True,
            )
        except DockerException as exc:
            raise RunnerError(f"failed to create container: {exc}") from exc
        ctx.logger.info(f"[{request.name}] container created: {container.id}")

        try:
            if request.docker.copy_ssh_key:
                src, dst = split_copy_spec(request.docker.copy_ssh_key)
                ctx.logger.info(f"copy ssh key to container: src: {src}, dst: {dst}")
                await self._copy_file_to_container(container, src, dst)

            await self._call(container.start)
            ctx.logger.info(f"[{request.name}] container started: {container.id}")

            try:
                # 取消时放弃等待的线程，容器在 finally 里被强制删除
                with ctx.cancellable():
                    status = await anyio.to_thread.run_sync(
                        lambda: container.wait(timeout=request.timeout_seconds),
                        abandon_on_cancel=True,
                    )
            except ReadTimeout as exc:
                raise RunnerTimeoutError(f"{request.name} timed out after {request.timeout_seconds}s") from exc
            exit_code = int(status.get("StatusCode", 0))
            if exit_code != 0:
                ctx.logger.warning(f"[{request.name}] container exited with status code: {exit_code}, mark and continue")

            output = b""
            artifact_path = environment.get(ARTIFACT_ENV, "")
            if artifact_path:
                try:
                    output = await self._read_artifact(container, artifact_path)
                except RunnerError as exc:
                    ctx.logger.error(f"failed to read artifact content: {exc}")
            if not output:
                output = await self._call(container.logs, stdout=True, stderr=True)
        except (DockerException, RequestException) as exc:
            raise RunnerError(f"container run failed: {exc}") from exc
        finally:
            await self._remove(ctx, container)

        return ExecutionResult.from_bytes(script=script, data=output, exit_code=exit_code)

    async def _copy_file_to_container(self, container: Any, src: str, dst: str) -> None:
        try:
            with open(src, "rb") as f:
                content = f.read()
        except OSError as exc:
            raise RunnerError(f"failed to read {src}: {exc}") from exc
        data = build_single_file_tar(name=os.path.basename(dst), content=content, mode=0o600)
        ok = await self._call(container.put_archive, os.path.dirname(dst) or "/", data)
        if not ok:
            raise RunnerError(f"failed to copy {src} to container path {dst}")

    async def _read_artifact(self, container: Any, artifact_path: str) -> bytes:
        try:
            chunks, _ = await self._call(container.get_archive, artifact_path)
            raw = await self._call(lambda: b"".join(chunks))
        except NotFound:
            return b""
        except DockerException as exc:
            raise RunnerError(f"failed to copy from container: {exc}") from exc
        return combine_artifact_tar(raw)

    async def _remove(self, ctx: EventContext, container: Any) -> None:
        try:
            await self._call(container.remove, force=True)
        except DockerException as exc:
            ctx.logger.warning(f"failed to remove container {container.id}: {exc}")


def apply_artifact_dir(environment: dict[str, str], args: list[str]) -> tuple[dict[str, str], list[str]]:
    """
    脚本引用了 `$ARTIFACT` 但没有设置该环境变量时，补一个容器内的临时目录并先创建它。
    """
    env = dict(environment)
    if ARTIFACT_ENV in env:
        return env, list(args)
    uses_artifact = any("$ARTIFACT" in a or "${ARTIFACT}" in a for a in args)
    if not uses_artifact:
        return env, list(args)
    artifact_dir = f"/tmp/artifacts-{secrets.token_hex(8)}"
    env[ARTIFACT_ENV] = artifact_dir
    return env, [f"mkdir -p {artifact_dir}\n", *args]


def build_single_file_tar(name: str, content: bytes, mode: int = 0o644) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        info.mode = mode
        tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def combine_artifact_tar(raw: bytes) -> bytes:
    """读取 tar 里的普通文件，按名字排序后拼接；没有非空文件返回 b""。"""
    files: list[tuple[str, bytes]] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                files.append((member.name, extracted.read()))
    except tarfile.TarError as exc:
        raise RunnerError(f"error reading artifact tar: {exc}") from exc

    if not any(content for _, content in files):
        return b""
    combined = io.BytesIO()
    for name, content in sorted(files):
        combined.write(f"---{name}---\n".encode())
        combined.write(content)
        combined.write(b"\n")
    return combined.getvalue()
