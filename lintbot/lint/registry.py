from __future__ import annotations

"""
Linter 注册表。

为什么需要 registry：
- 把“配置里的 linter 名字”映射到它的解析方式与适用语言
- 注册表是一个普通对象，在启动时构建并传给 orchestrator（测试可以各自构建隔离的实例）
"""

import os
from collections.abc import Iterable
from dataclasses import dataclass, field

from lintbot.lint.models import Diagnostic
from lintbot.lint.parser import LineParser
from lintbot.lint.parser import general_line_parser


@dataclass(frozen=True)
class LinterSpec:
    name: str
    line_parser: LineParser = general_line_parser
    # 文件扩展名（含点），为空表示对所有变更都相关
    languages: tuple[str, ...] = field(default_factory=tuple)

    def is_related(self, changed_paths: Iterable[str]) -> bool:
        if not self.languages:
            return True
        exts = {os.path.splitext(p)[1] for p in changed_paths}
        return any(lang in exts for lang in self.languages)


class LinterRegistry:
    def __init__(self) -> None:
        self._specs: dict[str, LinterSpec] = {}

    def register(self, spec: LinterSpec) -> None:
        if not spec.name:
            raise ValueError("linter name must be non-empty")
        if spec.name in self._specs:
            raise ValueError(f"linter already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> LinterSpec:
        if name not in self._specs:
            raise KeyError(f"Unknown linter: {name}")
        return self._specs[name]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def names(self) -> list[str]:
        return sorted(self._specs)


def _luacheck_line_parser(line: str) -> Diagnostic | None:
    # luacheck 末尾的汇总行：Total: 1 warning / 0 errors in 1 file
    if line.startswith("Total:") or line.startswith("Checking "):
        return None
    return general_line_parser(line.strip())


def build_default_registry(custom: Iterable[tuple[str, Iterable[str]]] = ()) -> LinterRegistry:
    """
    内置 linter + 配置里声明的自定义 linter（都使用通用行解析器）。

    - custom: (name, languages) 列表；与内置同名时以内置为准
    """
    registry = LinterRegistry()
    registry.register(LinterSpec(name="shellcheck", languages=(".sh", ".bash")))
    registry.register(LinterSpec(name="golangci-lint", languages=(".go",)))
    registry.register(LinterSpec(name="luacheck", line_parser=_luacheck_line_parser, languages=(".lua",)))
    for name, languages in custom:
        if name in registry:
            continue
        registry.register(LinterSpec(name=name, languages=tuple(languages)))
    return registry
