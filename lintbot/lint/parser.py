"""
通用 linter 输出解析。

约定：
- 每个 linter 只需要提供一个 LineParser（一行 -> Diagnostic | None）
- 解析不了的行不会丢弃，也不会中断流程：收集到 `unexpected`，由上游决定如何通知
- 返回的分组内不会出现 file/line/column/message 完全相同的两条
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from lintbot.lint.models import Diagnostic
from lintbot.lint.models import DiagnosticGroup
from lintbot.lint.models import add_diagnostic

# 返回 None 表示“可以识别但应忽略”的行（例如汇总行）；抛 ValueError 表示格式不符
LineParser = Callable[[str], Diagnostic | None]

_WITH_COLUMN = re.compile(r"^(.*):(\d+):(\d+): (.*)$")
_WITHOUT_COLUMN = re.compile(r"^(.*):(\d+): (.*)$")


@dataclass
class ParseResult:
    diagnostics: DiagnosticGroup = field(default_factory=dict)
    unexpected: list[str] = field(default_factory=list)


def general_line_parser(line: str) -> Diagnostic:
    """解析 `file:line:column: message` 或 `file:line: message`。"""
    match = _WITH_COLUMN.match(line)
    if match is not None:
        path, line_no, column, message = match.groups()
        return Diagnostic(file=path, line=int(line_no), column=int(column), message=message)
    match = _WITHOUT_COLUMN.match(line)
    if match is not None:
        path, line_no, message = match.groups()
        return Diagnostic(file=path, line=int(line_no), message=message)
    raise ValueError(f"unexpected format, original: {line}")


def parse_output(output: bytes | str, line_parser: LineParser = general_line_parser) -> ParseResult:
    text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
    result = ParseResult()
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        if not line.strip():
            continue
        try:
            diagnostic = line_parser(line)
        except ValueError:
            result.unexpected.append(line)
            continue
        if diagnostic is None:
            continue
        add_diagnostic(result.diagnostics, diagnostic)
    return result


def limit_join(lines: list[str], length: int) -> str:
    """按换行拼接，总长度超过 length 时停止（用于通知里的 unexpected 摘要）。"""
    result = ""
    for line in lines:
        if not line.strip():
            continue
        if len(result) + len(line) > length:
            break
        result += line + "\n"
    return result
