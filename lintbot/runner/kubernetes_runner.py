"""
集群 Job Runner（Kubernetes）。

流程：
1. prepare：SelfSubjectAccessReview 检查能否在 namespace 里创建 Job，不能则 `PermissionDeniedError`
2. 渲染 Job：一个常驻容器（sleep 到生命周期结束）+ 代码目录 emptyDir + 过期时间 label（外部 reaper 据此回收）
3. 同名 Job 已存在（例如事件重试）：先删除并等待删除完成，避免名字冲突
4. 创建 Job，轮询其 Pod 直到 Running；Failed/Succeeded/Unknown 视为 `UnexpectedPodStatusError`
5. `kubectl cp` 拷贝 SSH key（可选）和代码到 Pod
6. 把脚本写进 Pod 并执行，输出重定向到 Pod 主进程的 stdout（/proc/1/fd/1），统一从 Pod 日志取
7. 读取 Pod 日志作为输出

只有基础设施错误（创建/删除/轮询/拷贝）是致命的；脚本自身的退出码只记日志。
被取消时不做同步清理，Job 交给 reaper 按 label 回收。
"""

from __future__ import annotations

import hashlib
import os
import re
import shlex
import subprocess
import time
from collections.abc import Callable
from typing import Any, TypeVar

import anyio
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from lintbot.infra.context import EventContext
from lintbot.runner.base import ExecutionRequest
from lintbot.runner.base import ExecutionResult
from lintbot.runner.base import KubernetesSpec
from lintbot.runner.base import PermissionDeniedError
from lintbot.runner.base import RunnerError
from lintbot.runner.base import RunnerTimeoutError
from lintbot.runner.base import UnexpectedPodStatusError
from lintbot.runner.base import build_script
from lintbot.runner.base import split_copy_spec

T = TypeVar("T")

CONTAINER_NAME = "runner"
SCRIPT_NAME = ".lintbot-script.sh"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
EXPIRE_AT_LABEL = "lintbot.io/expire-at"
POLL_INTERVAL_SECONDS = 2.0
TERMINAL_PHASES = ("Failed", "Succeeded", "Unknown")


class KubernetesRunner:
    def __init__(
        self,
        batch_api: Any,
        core_api: Any,
        auth_api: Any,
        kubectl_bin: str = "kubectl",
        kubeconfig: str | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self._batch = batch_api
        self._core = core_api
        self._auth = auth_api
        self._kubectl_bin = kubectl_bin
        self._kubeconfig = kubeconfig
        self._poll_interval = poll_interval

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str | None = None) -> KubernetesRunner:
        """优先使用 kubeconfig 文件，失败时回退到 in-cluster 配置。"""
        path = kubeconfig or os.path.join(os.path.expanduser("~"), ".kube", "config")
        try:
            k8s_config.load_kube_config(config_file=path)
        except (ConfigException, OSError):
            try:
                k8s_config.load_incluster_config()
            except ConfigException as exc:
                raise RunnerError(f"could not load kubernetes configuration: {exc}") from exc
            path = None
        return cls(
            batch_api=k8s_client.BatchV1Api(),
            core_api=k8s_client.CoreV1Api(),
            auth_api=k8s_client.AuthorizationV1Api(),
            kubeconfig=path,
        )

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await anyio.to_thread.run_sync(lambda: fn(*args, **kwargs))

    async def prepare(self, ctx: EventContext, request: ExecutionRequest) -> None:
        spec = _require_spec(request)
        review = {
            "apiVersion": "authorization.k8s.io/v1",
            "kind": "SelfSubjectAccessReview",
            "spec": {
                "resourceAttributes": {
                    "namespace": spec.namespace,
                    "verb": "create",
                    "group": "batch",
                    "resource": "jobs",
                }
            },
        }
        try:
            response = await self._call(self._auth.create_self_subject_access_review, body=review)
        except ApiException as exc:
            ctx.logger.error(f"failed to check permission: {exc}")
            raise RunnerError(f"failed to check job permission in {spec.namespace}: {exc}") from exc
        if not _access_allowed(response):
            raise PermissionDeniedError(
                f"permission check failed: not allowed to create Job in namespace {spec.namespace}"
            )

    async def run(self, ctx: EventContext, request: ExecutionRequest) -> ExecutionResult:
        spec = _require_spec(request)
        await self.prepare(ctx, request)

        shell, script = build_script(request.command, request.args)
        ctx.logger.info(f"[{request.name}] script content:\n{script}")

        ssh_copy: tuple[str, str] | None = None
        if spec.copy_ssh_key:
            ssh_copy = split_copy_spec(spec.copy_ssh_key)

        job_name = derive_job_name(request.name, ctx.event_id)
        job = render_job(job_name, request, spec, ssh_dst=ssh_copy[1] if ssh_copy else None)

        deadline = anyio.current_time() + spec.pod_ready_timeout_seconds
        await self._delete_existing_job(ctx, spec.namespace, job_name, deadline)
        try:
            await self._call(self._batch.create_namespaced_job, namespace=spec.namespace, body=job)
        except ApiException as exc:
            raise RunnerError(f"failed to create job {job_name}: {exc}") from exc
        ctx.logger.info(f"[{request.name}] job created: {spec.namespace}/{job_name}")

        pod_name = await self._wait_for_running_pod(ctx, spec.namespace, job_name, deadline)
        ctx.logger.info(f"[{request.name}] pod running: {pod_name}")

        if ssh_copy is not None:
            src, dst = ssh_copy
            ctx.logger.info(f"copy ssh key to pod: src: {src}, dst: {dst}")
            await self._copy_to_pod(ctx, spec.namespace, pod_name, src, dst)

        code_root = os.path.dirname(request.working_dir.rstrip("/")) or "/"
        await self._copy_to_pod(ctx, spec.namespace, pod_name, os.path.join(code_root, "."), code_root)

        exit_code = await self._exec_script(
            ctx, spec.namespace, pod_name, request.working_dir, shell[0], script, request.timeout_seconds
        )

        try:
            logs = await self._call(
                self._core.read_namespaced_pod_log,
                name=pod_name,
                namespace=spec.namespace,
                container=CONTAINER_NAME,
            )
        except ApiException as exc:
            raise RunnerError(f"failed to read logs of pod {pod_name}: {exc}") from exc
        data = logs.encode("utf-8") if isinstance(logs, str) else bytes(logs or b"")
        return ExecutionResult.from_bytes(script=script, data=data, exit_code=exit_code)

    async def _delete_existing_job(self, ctx: EventContext, namespace: str, job_name: str, deadline: float) -> None:
        if not await self._job_exists(namespace, job_name):
            return
        ctx.logger.info(f"job {namespace}/{job_name} already exists, deleting it first")
        try:
            await self._call(
                self._batch.delete_namespaced_job,
                name=job_name,
                namespace=namespace,
                propagation_policy="Foreground",
            )
        except ApiException as exc:
            if exc.status != 404:
                raise RunnerError(f"failed to delete job {job_name}: {exc}") from exc
        while await self._job_exists(namespace, job_name):
            if anyio.current_time() >= deadline:
                raise RunnerTimeoutError(f"timed out waiting for job {job_name} to be deleted")
            await ctx.sleep(self._poll_interval)

    async def _job_exists(self, namespace: str, job_name: str) -> bool:
        try:
            await self._call(self._batch.read_namespaced_job, name=job_name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise RunnerError(f"failed to read job {job_name}: {exc}") from exc
        return True

    async def _wait_for_running_pod(self, ctx: EventContext, namespace: str, job_name: str, deadline: float) -> str:
        while True:
            try:
                pods = await self._call(
                    self._core.list_namespaced_pod,
                    namespace=namespace,
                    label_selector=f"job-name={job_name}",
                )
            except ApiException as exc:
                raise RunnerError(f"failed to list pods of job {job_name}: {exc}") from exc
            for pod in pods.items:
                phase = pod.status.phase if pod.status is not None else None
                if phase == "Running":
                    return pod.metadata.name
                if phase in TERMINAL_PHASES:
                    raise UnexpectedPodStatusError(f"pod {pod.metadata.name} of job {job_name} is {phase}")
            if anyio.current_time() >= deadline:
                raise RunnerTimeoutError(f"timed out waiting for pod of job {job_name} to be running")
            await ctx.sleep(self._poll_interval)

    async def _copy_to_pod(self, ctx: EventContext, namespace: str, pod_name: str, src: str, dst: str) -> None:
        result = await self._kubectl(ctx, ["cp", src, f"{namespace}/{pod_name}:{dst}", "-c", CONTAINER_NAME])
        if result.returncode != 0:
            raise RunnerError(f"failed to copy {src} to pod {pod_name}: {result.stdout.decode(errors='replace')}")

    async def _exec_script(
        self,
        ctx: EventContext,
        namespace: str,
        pod_name: str,
        working_dir: str,
        shell: str,
        script: str,
        timeout_seconds: float,
    ) -> int:
        script_path = f"{working_dir.rstrip('/')}/{SCRIPT_NAME}"
        exec_prefix = ["exec", "-n", namespace, pod_name, "-c", CONTAINER_NAME]
        write = await self._kubectl(
            ctx,
            [*exec_prefix, "-i", "--", "sh", "-c", f"cat > {shlex.quote(script_path)}"],
            input=script.encode("utf-8"),
        )
        if write.returncode != 0:
            raise RunnerError(f"failed to write script to pod {pod_name}: {write.stdout.decode(errors='replace')}")

        command = f"cd {shlex.quote(working_dir)} && {shell} {shlex.quote(script_path)} > /proc/1/fd/1 2>&1"
        try:
            with anyio.fail_after(timeout_seconds):
                result = await self._kubectl(ctx, [*exec_prefix, "--", "sh", "-c", command])
        except TimeoutError as exc:
            raise RunnerTimeoutError(f"script on pod {pod_name} timed out after {timeout_seconds}s") from exc
        if result.returncode != 0:
            ctx.logger.warning(f"script on pod {pod_name} exited with code {result.returncode}, mark and continue")
        return result.returncode

    async def _kubectl(
        self,
        ctx: EventContext,
        args: list[str],
        input: bytes | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        cmd = [self._kubectl_bin]
        if self._kubeconfig:
            cmd += ["--kubeconfig", self._kubeconfig]
        cmd += args
        ctx.logger.info(f"executing command: {' '.join(cmd)}")
        try:
            with ctx.cancellable():
                return await anyio.run_process(
                    cmd,
                    input=input,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
        except OSError as exc:
            raise RunnerError(f"failed to run kubectl: {exc}") from exc


def _require_spec(request: ExecutionRequest) -> KubernetesSpec:
    if request.kubernetes is None or not request.kubernetes.image:
        raise RunnerError("kubernetes image is not set")
    return request.kubernetes


def _access_allowed(response: Any) -> bool:
    status = response.get("status") if isinstance(response, dict) else getattr(response, "status", None)
    if status is None:
        return False
    allowed = status.get("allowed") if isinstance(status, dict) else getattr(status, "allowed", False)
    return bool(allowed)


def derive_job_name(linter_name: str, event_id: str) -> str:
    """同一事件 + 同一 linter 得到同一个名字（DNS-1123，<= 63 字符）。"""
    slug = re.sub(r"[^a-z0-9-]+", "-", linter_name.lower())[:30].strip("-") or "linter"
    digest = hashlib.sha1(f"{event_id}/{linter_name}".encode()).hexdigest()[:10]
    return f"lintbot-{slug}-{digest}"


def render_job(
    job_name: str,
    request: ExecutionRequest,
    spec: KubernetesSpec,
    ssh_dst: str | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    expire_at = int((now if now is not None else time.time()) + spec.lifetime_seconds)
    labels = {MANAGED_BY_LABEL: "lintbot", EXPIRE_AT_LABEL: str(expire_at)}
    code_root = os.path.dirname(request.working_dir.rstrip("/")) or "/"

    volumes: list[dict[str, Any]] = [{"name": "code-dir", "emptyDir": {}}]
    mounts: list[dict[str, Any]] = [{"name": "code-dir", "mountPath": code_root}]
    if ssh_dst:
        volumes.append({"name": "ssh-mount", "emptyDir": {}})
        mounts.append({"name": "ssh-mount", "mountPath": os.path.dirname(ssh_dst) or "/"})

    container = {
        "name": CONTAINER_NAME,
        "image": spec.image,
        "command": ["/bin/sh", "-c"],
        "args": [f"sleep {spec.lifetime_seconds}"],
        "workingDir": request.working_dir,
        "env": [{"name": k, "value": v} for k, v in sorted(request.environment.items())],
        "volumeMounts": mounts,
    }
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": job_name, "namespace": spec.namespace, "labels": labels},
        "spec": {
            "backoffLimit": 0,
            "activeDeadlineSeconds": spec.lifetime_seconds,
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [container],
                    "volumes": volumes,
                },
            },
        },
    }
