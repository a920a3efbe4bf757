from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse, urlunparse

import anyio

from lintbot.infra.context import EventContext

logger = logging.getLogger(__name__)


class RepoSyncer:
    """
    基于 git CLI 的工作区检出。

    每个事件独占一个目录：`<base_dir>/<event_id>/<repo>`，用完即删。
    git 是同步调用，放到线程里跑。
    """

    def __init__(self, base_dir: str, git_bin: str = "git") -> None:
        self._base_dir = base_dir
        self._git_bin = git_bin

    def checkout(
        self,
        event_id: str,
        repo_name: str,
        clone_url: str,
        head_ref: str,
        head_sha: str,
        token: str | None,
        token_user: str | None,
    ) -> str:
        repo_dir = _repo_dir(base_dir=self._base_dir, event_id=event_id, repo_name=repo_name)
        if os.path.exists(repo_dir):
            raise RuntimeError(f"Workspace already exists: {repo_dir}")
        os.makedirs(os.path.dirname(repo_dir), exist_ok=True)
        auth_url = _inject_token(clone_url=clone_url, token=token, token_user=token_user)

        _run_git(self._git_bin, ["clone", "--no-checkout", auth_url, repo_dir], None)
        _run_git(self._git_bin, ["fetch", "origin", head_ref], repo_dir)
        _run_git(self._git_bin, ["-c", "advice.detachedHead=false", "checkout", head_sha], repo_dir)
        return repo_dir

    def cleanup(self, event_id: str) -> None:
        event_dir = os.path.join(self._base_dir, _safe(event_id))
        if not os.path.exists(event_dir):
            return
        try:
            shutil.rmtree(event_dir)
        except OSError as exc:
            logger.warning(f"failed to remove workspace {event_dir}: {exc}")

    @asynccontextmanager
    async def workspace(
        self,
        ctx: EventContext,
        repo_name: str,
        clone_url: str,
        head_ref: str,
        head_sha: str,
        token: str | None = None,
        token_user: str | None = None,
    ) -> AsyncIterator[str]:
        ctx.logger.info(f"checking out {repo_name}@{head_sha} ({head_ref})")
        try:
            repo_dir = await anyio.to_thread.run_sync(
                lambda: self.checkout(ctx.event_id, repo_name, clone_url, head_ref, head_sha, token, token_user)
            )
            yield repo_dir
        finally:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(lambda: self.cleanup(ctx.event_id))


def github_head_ref(pull_number: int) -> str:
    return f"pull/{pull_number}/head"


def gitlab_head_ref(mr_iid: int) -> str:
    return f"merge-requests/{mr_iid}/head"


def _safe(value: str) -> str:
    return value.replace("/", "__").replace(":", "__")


def _repo_dir(base_dir: str, event_id: str, repo_name: str) -> str:
    return os.path.join(base_dir, _safe(event_id), _safe(repo_name))


def _inject_token(clone_url: str, token: str | None, token_user: str | None) -> str:
    if clone_url.startswith("git@") or clone_url.startswith("ssh://"):
        return clone_url
    if token is None or token_user is None:
        return clone_url
    parsed = urlparse(clone_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid clone_url: {clone_url}")
    netloc = f"{token_user}:{token}@{parsed.netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _redact(args: list[str]) -> list[str]:
    redacted = []
    for arg in args:
        parsed = urlparse(arg)
        if parsed.scheme and parsed.password:
            arg = urlunparse(parsed._replace(netloc=f"{parsed.username}:***@{parsed.netloc.rsplit('@', 1)[-1]}"))
        redacted.append(arg)
    return redacted


def _run_git(git_bin: str, args: list[str], cwd: str | None) -> None:
    cmd = [git_bin] + args
    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True)
    if result.returncode != 0:
        shown = " ".join(_redact(cmd))
        logger.error(f"git failed: {shown}\nstdout={result.stdout}\nstderr={result.stderr}")
        raise RuntimeError(f"git command failed: {shown}")
