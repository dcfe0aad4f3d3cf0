"""日志查询

从日志文件末尾按块倒序读取最近若干行，再按级别、关键字和提醒 ID 过滤。
调度器写出的每条触发/漏服/SMS 日志都带提醒 ID，按 ID 过滤即可得到单个提醒的运行记录。
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

# loguru 格式: "时间 | LEVEL    | 模块:函数:行 - 内容"
_LEVEL_FIELD = re.compile(r"\|\s*(%s)\s*\|" % "|".join(LOG_LEVELS))


@dataclass(frozen=True)
class LogQuery:
    levels: frozenset[str] = frozenset()
    keyword: str = ""
    reminder_id: str = ""

    @classmethod
    def parse(
        cls,
        levels: Iterable[str] = (),
        keyword: str | None = None,
        reminder_id: str | None = None,
    ) -> "LogQuery":
        """规范化查询参数，未知级别直接忽略"""
        wanted = {str(level).strip().upper() for level in levels}
        return cls(
            levels=frozenset(wanted & set(LOG_LEVELS)),
            keyword=(keyword or "").strip().lower(),
            reminder_id=(reminder_id or "").strip(),
        )

    @property
    def empty(self) -> bool:
        return not (self.levels or self.keyword or self.reminder_id)

    def matches(self, line: str) -> bool:
        if self.levels:
            match = _LEVEL_FIELD.search(line)
            if match is None or match.group(1) not in self.levels:
                return False
        if self.reminder_id and self.reminder_id not in line:
            return False
        return not self.keyword or self.keyword in line.lower()

    def apply(self, lines: list[str]) -> list[str]:
        if self.empty:
            return lines
        return [line for line in lines if self.matches(line)]


def read_tail(path: Path, limit: int, block_size: int = 64 * 1024) -> list[str]:
    """读取文件末尾 limit 行，只读入需要的块"""
    if limit <= 0 or not path.exists():
        return []

    data = b""
    with path.open("rb") as f:
        end = f.seek(0, os.SEEK_END)
        # 多读一个换行，保证第一行是完整的
        while end > 0 and data.count(b"\n") <= limit:
            start = max(0, end - block_size)
            f.seek(start)
            data = f.read(end - start) + data
            end = start

    return data.decode("utf-8", errors="replace").splitlines()[-limit:]


__all__ = ["LOG_LEVELS", "LogQuery", "read_tail"]
