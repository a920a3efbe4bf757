"""
Diff 相关性判断。

linter 报告的是文件的绝对行号，而 review 只关心“本次变更引入或触碰的”问题：
- `parse_hunks`：从 unified diff 的 hunk header（`@@ -a,b +c,d @@`）得到新文件侧的行区间
- `HunkSet.in_hunk`：判断某个问题是否落在变更区间内
- `filter_relevant`：按上面的判断过滤一次解析结果

多行问题（start_line != 0）的判断是刻意不对称的：起始行必须已经在 hunk 内，
结束行只和 hunk 的结束行比较。部分工具报告的结束行并不精确。
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from pydantic import BaseModel, model_validator

from lintbot.lint.models import DiagnosticGroup
from lintbot.review.models import FileChange

logger = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class MalformedPatchError(ValueError):
    """存在 hunk header，但数字字段无法解析。"""

    pass


class Hunk(BaseModel):
    start_line: int
    end_line: int

    @model_validator(mode="after")
    def _check_range(self) -> Hunk:
        if self.end_line < self.start_line:
            raise ValueError(f"hunk end_line {self.end_line} < start_line {self.start_line}")
        return self


def parse_hunks(patch: str) -> list[Hunk]:
    """
    解析一个文件的 patch，按 header 出现顺序返回 hunk 列表。

    - 没有 header（二进制文件、纯重命名）返回空列表，不算错误
    - 新文件侧长度为 0 的 hunk（纯删除）没有可评论的新行，跳过
    """
    hunks: list[Hunk] = []
    for line in patch.splitlines():
        if not line.startswith("@@"):
            continue
        match = _HUNK_HEADER.match(line)
        if match is None:
            raise MalformedPatchError(f"Invalid diff hunk header: {line}")
        new_start = int(match.group(3))
        new_len = int(match.group(4)) if match.group(4) is not None else 1
        if new_len == 0:
            continue
        hunks.append(Hunk(start_line=new_start, end_line=new_start + new_len - 1))
    return hunks


class HunkSet:
    """file -> list[Hunk]。每个变更集构建一次，被该变更集上的所有 linter 复用。"""

    def __init__(self, hunks: dict[str, list[Hunk]] | None = None) -> None:
        self._hunks: dict[str, list[Hunk]] = dict(hunks or {})

    def files(self) -> list[str]:
        return list(self._hunks)

    def hunks_for(self, file: str) -> list[Hunk]:
        return list(self._hunks.get(file, []))

    def in_hunk(self, file: str, line: int, start_line: int = 0) -> bool:
        for hunk in self._hunks.get(file, []):
            if start_line != 0:
                if start_line >= hunk.start_line and line <= hunk.end_line:
                    return True
            elif hunk.start_line <= line <= hunk.end_line:
                return True
        return False


def in_hunk(hunk_set: HunkSet, file: str, line: int, start_line: int = 0) -> bool:
    return hunk_set.in_hunk(file=file, line=line, start_line=start_line)


def build_hunk_set(changes: Iterable[FileChange]) -> HunkSet:
    """
    从变更文件构建 HunkSet。

    - 删除的文件、没有 diff 文本的文件不参与（对它们的任何问题都不相关）
    - 同一路径重复出现时保留第一个
    """
    hunks: dict[str, list[Hunk]] = {}
    for change in changes:
        if change.is_deleted_file or not change.diff:
            continue
        if change.path in hunks:
            logger.warning(f"duplicate changed file in change set: {change.path}")
            continue
        hunks[change.path] = parse_hunks(change.diff)
    return HunkSet(hunks)


def filter_relevant(diagnostics: DiagnosticGroup, hunk_set: HunkSet) -> DiagnosticGroup:
    relevant: DiagnosticGroup = {}
    for file, items in diagnostics.items():
        kept = [d for d in items if hunk_set.in_hunk(file=file, line=d.line, start_line=d.start_line)]
        if kept:
            relevant[file] = kept
    return relevant
