from __future__ import annotations

import threading

import anyio
import pytest
from docker.errors import APIError
from docker.errors import ImageNotFound
from docker.errors import NotFound

from lintbot.infra.context import OperationCancelledError
from lintbot.infra.context import new_event_context
from lintbot.runner.base import DockerSpec
from lintbot.runner.base import ExecutionRequest
from lintbot.runner.base import ImagePullError
from lintbot.runner.docker_runner import DockerRunner
from lintbot.runner.docker_runner import apply_artifact_dir
from lintbot.runner.docker_runner import build_single_file_tar
from lintbot.runner.docker_runner import combine_artifact_tar


class FakeContainer:
    id = "c0ffee"

    def __init__(self, logs: bytes = b"", status: int = 0, archive: bytes | None = None) -> None:
        self._logs = logs
        self._status = status
        self._archive = archive
        self.started = False
        self.removed = False
        self.put: list[tuple[str, bytes]] = []

    def put_archive(self, path: str, data: bytes) -> bool:
        self.put.append((path, data))
        return True

    def start(self) -> None:
        self.started = True

    def wait(self, timeout: float | None = None) -> dict[str, int]:
        return {"StatusCode": self._status}

    def get_archive(self, path: str):
        if self._archive is None:
            raise NotFound(f"no such path: {path}")
        return iter([self._archive]), {"name": path}

    def logs(self, stdout: bool = True, stderr: bool = True) -> bytes:
        return self._logs

    def remove(self, force: bool = False) -> None:
        self.removed = True


class FakeImages:
    def __init__(self, present: set[str], pull_error: Exception | None = None) -> None:
        self.present = present
        self.pulled: list[str] = []
        self._pull_error = pull_error

    def get(self, image: str) -> str:
        if image not in self.present:
            raise ImageNotFound(f"image not found: {image}")
        return image

    def pull(self, image: str) -> str:
        if self._pull_error is not None:
            raise self._pull_error
        self.pulled.append(image)
        self.present.add(image)
        return image


class FakeContainers:
    def __init__(self, container: FakeContainer) -> None:
        self.container = container
        self.create_calls: list[tuple[str, dict]] = []

    def create(self, image: str, **kwargs) -> FakeContainer:
        self.create_calls.append((image, kwargs))
        return self.container


class FakeDockerClient:
    def __init__(self, container: FakeContainer, present: set[str] | None = None, pull_error: Exception | None = None) -> None:
        self.images = FakeImages(present if present is not None else set(), pull_error)
        self.containers = FakeContainers(container)


def _request(args: list[str], **docker_kwargs) -> ExecutionRequest:
    return ExecutionRequest(
        name="golangci-lint",
        command=["/bin/sh", "-c"],
        args=args,
        working_dir="/workspace/widgets",
        docker=DockerSpec(image="golangci/golangci-lint:v1.59", **docker_kwargs),
    )


@pytest.mark.anyio
async def test_docker_runner_pulls_image_and_returns_logs() -> None:
    container = FakeContainer(logs=b"a.go:1:1: issue\n", status=1)
    client = FakeDockerClient(container)

    result = await DockerRunner(client=client).run(new_event_context("docker"), _request(["golangci-lint run"]))
    with result:
        assert result.read() == b"a.go:1:1: issue\n"
        assert result.exit_code == 1

    assert client.images.pulled == ["golangci/golangci-lint:v1.59"]
    image, kwargs = client.containers.create_calls[0]
    assert image == "golangci/golangci-lint:v1.59"
    assert kwargs["entrypoint"] == ["/bin/sh", "-c"]
    assert kwargs["working_dir"] == "/workspace/widgets"
    assert kwargs["volumes"] == {"/workspace/widgets": {"bind": "/workspace/widgets", "mode": "rw"}}
    assert kwargs["command"][0].startswith("set -e\ngit config --global --add safe.directory /workspace/widgets\n")
    assert container.started
    assert container.removed


@pytest.mark.anyio
async def test_docker_runner_prefers_artifact_files() -> None:
    archive = build_single_file_tar("out.txt", b"b.go:2:1: from artifact")
    container = FakeContainer(logs=b"ignored", archive=archive)
    client = FakeDockerClient(container, present={"golangci/golangci-lint:v1.59"})

    result = await DockerRunner(client=client).run(
        new_event_context("docker"), _request(["golangci-lint run > $ARTIFACT/out.txt"])
    )
    with result:
        assert result.read() == b"---out.txt---\nb.go:2:1: from artifact\n"
    assert client.images.pulled == []
    _, kwargs = client.containers.create_calls[0]
    assert kwargs["environment"]["ARTIFACT"].startswith("/tmp/artifacts-")


@pytest.mark.anyio
async def test_docker_runner_copies_ssh_key(tmp_path) -> None:
    key = tmp_path / "id_rsa"
    key.write_bytes(b"secret")
    container = FakeContainer(logs=b"")
    client = FakeDockerClient(container, present={"golangci/golangci-lint:v1.59"})

    await DockerRunner(client=client).run(
        new_event_context("docker"), _request(["true"], copy_ssh_key=f"{key}:/root/.ssh/id_rsa")
    )
    assert container.put[0][0] == "/root/.ssh"


@pytest.mark.anyio
async def test_docker_runner_pull_failure() -> None:
    container = FakeContainer()
    client = FakeDockerClient(container, pull_error=APIError("pull access denied"))

    with pytest.raises(ImagePullError):
        await DockerRunner(client=client).run(new_event_context("docker"), _request(["true"]))
    assert client.containers.create_calls == []


def test_apply_artifact_dir_only_when_referenced() -> None:
    env, args = apply_artifact_dir({}, ["golangci-lint run"])
    assert env == {}
    assert args == ["golangci-lint run"]

    env, args = apply_artifact_dir({}, ["lint > ${ARTIFACT}/x"])
    assert env["ARTIFACT"].startswith("/tmp/artifacts-")
    assert args[0] == f"mkdir -p {env['ARTIFACT']}\n"

    env, args = apply_artifact_dir({"ARTIFACT": "/out"}, ["lint > $ARTIFACT/x"])
    assert env == {"ARTIFACT": "/out"}


def test_combine_artifact_tar_empty_files() -> None:
    assert combine_artifact_tar(build_single_file_tar("empty.txt", b"")) == b""


class BlockingContainer(FakeContainer):
    """wait() 一直阻塞，直到测试放行。"""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def wait(self, timeout: float | None = None) -> dict[str, int]:
        self.release.wait(10)
        return {"StatusCode": 0}


@pytest.mark.anyio
async def test_docker_runner_cancel_removes_running_container() -> None:
    container = BlockingContainer()
    client = FakeDockerClient(container, present={"golangci/golangci-lint:v1.59"})
    ctx = new_event_context("docker")

    async def cancel_soon() -> None:
        await anyio.sleep(0.2)
        ctx.cancel()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(cancel_soon)
            with pytest.raises(OperationCancelledError):
                await DockerRunner(client=client).run(ctx, _request(["golangci-lint run"]))
        assert container.removed
    finally:
        container.release.set()
