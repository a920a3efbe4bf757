from __future__ import annotations

import pytest

from lintbot.lint.registry import LinterRegistry
from lintbot.lint.registry import LinterSpec
from lintbot.lint.registry import build_default_registry


def test_default_registry_contains_builtin_linters() -> None:
    registry = build_default_registry()
    assert {"shellcheck", "golangci-lint", "luacheck"} <= set(registry.names())


def test_registries_are_isolated() -> None:
    a = build_default_registry(custom=[("mylinter", [".py"])])
    b = build_default_registry()
    assert "mylinter" in a
    assert "mylinter" not in b


def test_register_rejects_duplicates() -> None:
    registry = LinterRegistry()
    registry.register(LinterSpec(name="x"))
    with pytest.raises(ValueError):
        registry.register(LinterSpec(name="x"))
    with pytest.raises(KeyError):
        registry.get("y")


def test_language_relatedness() -> None:
    spec = build_default_registry().get("golangci-lint")
    assert spec.is_related(["cmd/main.go", "README.md"])
    assert not spec.is_related(["README.md", "scripts/build.sh"])
    assert LinterSpec(name="any").is_related(["README.md"])
