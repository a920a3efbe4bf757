"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL/字符串等，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` / 文件路径显式输入，便于单元测试

两部分：
- 环境变量：平台凭据、可选 LLM、目录与通知地址
- YAML（`LINTBOT_CONFIG`）：每个 linter 怎么跑、结果怎么报告
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, field_validator

from lintbot.runner.base import DockerSpec
from lintbot.runner.base import KubernetesSpec
from lintbot.runner.base import split_copy_spec

DEFAULT_WORKSPACE_DIR = "/tmp/lintbot-workspace"
DEFAULT_LOG_DIR = "/tmp/lintbot-logs"

ReportType = Literal["github_pr_review", "github_check_run", "gitlab_discussion", "quiet"]


class GitHubConfig(BaseModel):
    api_base_url: HttpUrl
    token: str
    webhook_secret: str


class GitLabConfig(BaseModel):
    base_url: HttpUrl
    token: str
    webhook_secret: str


class LLMConfig(BaseModel):
    base_url: HttpUrl
    api_key: str
    model: str


class AppConfig(BaseModel):
    """应用运行所需配置。github/gitlab 至少一个；llm 可选。"""

    github: GitHubConfig | None = None
    gitlab: GitLabConfig | None = None
    llm: LLMConfig | None = None
    linters_config_path: str | None = None
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    log_dir: str = DEFAULT_LOG_DIR
    kubeconfig: str | None = None
    notify_webhook_url: HttpUrl | None = None
    server_url: str = ""
    log_level: str = "INFO"


def _section(environ: Mapping[str, str], keys: tuple[str, ...], name: str) -> dict[str, str] | None:
    """整组都没配 -> None；配了一部分 -> ValueError。"""
    present = [k for k in keys if environ.get(k)]
    if not present:
        return None
    missing = [k for k in keys if not environ.get(k)]
    if missing:
        raise ValueError(f"Incomplete {name} config, missing env vars: {', '.join(missing)}")
    return {k: environ[k] for k in keys}


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：某一组只配了一部分、或者 GitHub/GitLab 都没配，抛 `ValueError`
    """
    github_env = _section(environ, ("GITHUB_API_BASE_URL", "GITHUB_TOKEN", "GITHUB_WEBHOOK_SECRET"), "GitHub")
    gitlab_env = _section(environ, ("GITLAB_BASE_URL", "GITLAB_TOKEN", "GITLAB_WEBHOOK_SECRET"), "GitLab")
    llm_env = _section(environ, ("LLM_BASE_URL", "LLM_API_KEY", "LLM_MODEL"), "LLM")
    if github_env is None and gitlab_env is None:
        raise ValueError("At least one of GitHub or GitLab must be configured")

    # 交给 Pydantic 做类型校验（例如 URL 合法性）
    return AppConfig(
        github=(
            GitHubConfig(
                api_base_url=github_env["GITHUB_API_BASE_URL"],
                token=github_env["GITHUB_TOKEN"],
                webhook_secret=github_env["GITHUB_WEBHOOK_SECRET"],
            )
            if github_env
            else None
        ),
        gitlab=(
            GitLabConfig(
                base_url=gitlab_env["GITLAB_BASE_URL"],
                token=gitlab_env["GITLAB_TOKEN"],
                webhook_secret=gitlab_env["GITLAB_WEBHOOK_SECRET"],
            )
            if gitlab_env
            else None
        ),
        llm=(
            LLMConfig(base_url=llm_env["LLM_BASE_URL"], api_key=llm_env["LLM_API_KEY"], model=llm_env["LLM_MODEL"])
            if llm_env
            else None
        ),
        linters_config_path=environ.get("LINTBOT_CONFIG") or None,
        workspace_dir=environ.get("LINTBOT_WORKSPACE_DIR") or DEFAULT_WORKSPACE_DIR,
        log_dir=environ.get("LINTBOT_LOG_DIR") or DEFAULT_LOG_DIR,
        kubeconfig=environ.get("KUBECONFIG") or None,
        notify_webhook_url=environ.get("NOTIFY_WEBHOOK_URL") or None,
        server_url=(environ.get("LINTBOT_SERVER_URL") or "").rstrip("/"),
        log_level=environ.get("LOG_LEVEL") or "INFO",
    )


class LinterConfig(BaseModel):
    """单个 linter 的运行与报告方式。"""

    enable: bool = True
    work_dir: str = ""
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    # 文件扩展名（例如 ".go"）；为空时沿用注册表里的默认值
    languages: list[str] = Field(default_factory=list)
    report_type: ReportType = "github_pr_review"
    timeout_seconds: float = Field(default=600.0, gt=0)
    docker: DockerSpec | None = None
    kubernetes: KubernetesSpec | None = None

    @field_validator("docker", "kubernetes")
    @classmethod
    def _check_copy_ssh_key(cls, value: DockerSpec | KubernetesSpec | None) -> DockerSpec | KubernetesSpec | None:
        if value is not None and value.copy_ssh_key:
            split_copy_spec(value.copy_ssh_key)
        return value


class IssueReferenceRule(BaseModel):
    """message 匹配 pattern（正则）时，评论链接到 url 指向的 issue。"""

    pattern: str
    url: str


class LintersConfig(BaseModel):
    linters: dict[str, LinterConfig] = Field(default_factory=dict)
    issue_references: dict[str, list[IssueReferenceRule]] = Field(default_factory=dict)


def parse_linters_config(text: str) -> LintersConfig:
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("linters config must be a mapping")
    return LintersConfig.model_validate(data)


def load_linters_config(path: str | None) -> LintersConfig:
    """没有配置文件时返回空配置（不运行任何 linter）。"""
    if not path:
        return LintersConfig()
    with open(path, encoding="utf-8") as f:
        return parse_linters_config(f.read())
