from __future__ import annotations

import pytest

from lintbot.config import load_config_from_env
from lintbot.config import load_linters_config
from lintbot.config import parse_linters_config

GITHUB_ENV = {
    "GITHUB_API_BASE_URL": "https://api.github.com",
    "GITHUB_TOKEN": "t",
    "GITHUB_WEBHOOK_SECRET": "s",
}

GITLAB_ENV = {
    "GITLAB_BASE_URL": "https://gitlab.example.com",
    "GITLAB_TOKEN": "t",
    "GITLAB_WEBHOOK_SECRET": "s",
}


def test_load_config_requires_at_least_one_scm() -> None:
    with pytest.raises(ValueError):
        load_config_from_env(environ={})


def test_load_config_gitlab_only_ok() -> None:
    cfg = load_config_from_env(environ=GITLAB_ENV)
    assert cfg.gitlab is not None
    assert cfg.github is None
    assert cfg.llm is None
    assert cfg.workspace_dir == "/tmp/lintbot-workspace"
    assert cfg.log_dir == "/tmp/lintbot-logs"


def test_load_config_github_only_ok() -> None:
    cfg = load_config_from_env(environ=GITHUB_ENV)
    assert cfg.gitlab is None
    assert cfg.github is not None


def test_load_config_rejects_partial_gitlab() -> None:
    environ = {**GITHUB_ENV, "GITLAB_BASE_URL": "https://gitlab.example.com", "GITLAB_TOKEN": "t"}
    with pytest.raises(ValueError):
        load_config_from_env(environ=environ)


def test_load_config_rejects_partial_github() -> None:
    environ = {"GITHUB_API_BASE_URL": "https://api.github.com", "GITHUB_TOKEN": "t"}
    with pytest.raises(ValueError):
        load_config_from_env(environ=environ)


def test_load_config_llm_is_all_or_none() -> None:
    with pytest.raises(ValueError):
        load_config_from_env(environ={**GITHUB_ENV, "LLM_BASE_URL": "https://llm.example.com"})

    cfg = load_config_from_env(
        environ={**GITHUB_ENV, "LLM_BASE_URL": "https://llm.example.com", "LLM_API_KEY": "k", "LLM_MODEL": "m"}
    )
    assert cfg.llm is not None
    assert cfg.llm.model == "m"


def test_load_config_optional_settings() -> None:
    cfg = load_config_from_env(
        environ={
            **GITHUB_ENV,
            "LINTBOT_CONFIG": "/etc/lintbot/config.yaml",
            "LINTBOT_WORKSPACE_DIR": "/data/ws",
            "LINTBOT_SERVER_URL": "https://lintbot.example.com/",
            "NOTIFY_WEBHOOK_URL": "https://hooks.example.com/x",
            "LOG_LEVEL": "debug",
        }
    )
    assert cfg.linters_config_path == "/etc/lintbot/config.yaml"
    assert cfg.workspace_dir == "/data/ws"
    assert cfg.server_url == "https://lintbot.example.com"
    assert cfg.notify_webhook_url is not None
    assert cfg.log_level == "debug"


def test_parse_linters_config() -> None:
    cfg = parse_linters_config(
        """
linters:
  golangci-lint:
    command: ["/bin/bash", "-c"]
    args: ["golangci-lint run ./..."]
    report_type: github_check_run
    docker:
      image: golangci/golangci-lint:v1.59
      copy_ssh_key: /secrets/id_rsa:/root/.ssh/id_rsa
  shellcheck:
    enable: false
issue_references:
  golangci-lint:
    - pattern: "SA1019"
      url: https://github.com/acme/lint-docs/issues/3
"""
    )
    golangci = cfg.linters["golangci-lint"]
    assert golangci.report_type == "github_check_run"
    assert golangci.docker is not None
    assert golangci.docker.image == "golangci/golangci-lint:v1.59"
    assert golangci.timeout_seconds == 600.0
    assert cfg.linters["shellcheck"].enable is False
    assert cfg.issue_references["golangci-lint"][0].pattern == "SA1019"


def test_parse_linters_config_rejects_bad_ssh_key_spec() -> None:
    with pytest.raises(ValueError):
        parse_linters_config(
            """
linters:
  x:
    kubernetes:
      image: busybox
      copy_ssh_key: "a:b:c"
"""
        )


def test_parse_linters_config_rejects_unknown_report_type() -> None:
    with pytest.raises(ValueError):
        parse_linters_config("linters:\n  x:\n    report_type: email\n")


def test_load_linters_config_without_path_is_empty(tmp_path) -> None:
    assert load_linters_config(None).linters == {}
    path = tmp_path / "config.yaml"
    path.write_text("linters:\n  luacheck:\n    args: ['luacheck .']\n")
    assert list(load_linters_config(str(path)).linters) == ["luacheck"]
