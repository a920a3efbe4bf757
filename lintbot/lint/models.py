"""
Lint 领域模型（Pydantic）。

用途：
- `Diagnostic`：linter 报告的一条问题，解析后不可变
- `DiagnosticGroup`：按文件分组的问题集合（file -> list[Diagnostic]），同一次解析内去重
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field


class Diagnostic(BaseModel):
    """单条问题。column=0 表示未知列；start_line=0 表示单行问题。"""

    model_config = ConfigDict(frozen=True)

    file: str
    line: int = Field(ge=0)
    column: int = Field(default=0, ge=0)
    start_line: int = Field(default=0, ge=0)
    message: str

    def identity(self) -> tuple[str, int, int, str]:
        """去重键：file/line/column/message 相同即为同一问题（不看 start_line）。"""
        return (self.file, self.line, self.column, self.message)


DiagnosticGroup = dict[str, list[Diagnostic]]


def add_diagnostic(group: DiagnosticGroup, diagnostic: Diagnostic) -> bool:
    """加入分组；已存在同一问题时返回 False。"""
    existing = group.setdefault(diagnostic.file, [])
    key = diagnostic.identity()
    if any(d.identity() == key for d in existing):
        return False
    existing.append(diagnostic)
    return True


def group_diagnostics(diagnostics: Iterable[Diagnostic]) -> DiagnosticGroup:
    group: DiagnosticGroup = {}
    for diagnostic in diagnostics:
        add_diagnostic(group, diagnostic)
    return group


def iter_diagnostics(group: DiagnosticGroup) -> Iterator[Diagnostic]:
    for diagnostics in group.values():
        yield from diagnostics


def count_diagnostics(group: DiagnosticGroup) -> int:
    return sum(len(v) for v in group.values())
