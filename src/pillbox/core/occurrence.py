"""下次触发时间计算

时间点格式为 24 小时制、补零的 "HH:MM"，因此按字符串排序即为时间先后顺序。
参考时间必须带时区，候选时间在参考时间所在时区的同一天上构造。
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable

from pillbox.datamodel import RepeatType
from pillbox.utils import to_ms

__all__ = ["next_occurrence", "next_occurrence_ms", "parse_hhmm", "validate_times"]

_HHMM_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def parse_hhmm(time_str: str) -> tuple[int, int]:
    if not isinstance(time_str, str):
        raise ValueError(f"时间点必须是字符串: {time_str!r}")
    match = _HHMM_PATTERN.match(time_str.strip())
    if match is None:
        raise ValueError(f"无效的时间格式: {time_str!r}，预期格式为 HH:MM")
    return int(match.group(1)), int(match.group(2))


def validate_times(times: Iterable[str]) -> list[str]:
    """校验并规范化时间点列表: 补零、去重、排序；空列表视为非法"""
    normalized = sorted({"%02d:%02d" % parse_hhmm(t) for t in times})
    if not normalized:
        raise ValueError("提醒至少需要一个时间点")
    return normalized


def _at_time_of_day(day: datetime, hhmm: str) -> datetime:
    hour, minute = parse_hhmm(hhmm)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def next_occurrence(times: list[str], repeat: RepeatType, reference: datetime) -> datetime | None:
    """计算不早于 reference 的下一次触发时间

    - 当天还有未过的时间点: 返回其中最早的一个 (与 reference 相等也算)
    - 当天全部已过且 repeat 为 daily: 返回次日最早的时间点
    - 当天全部已过且 repeat 为 once: 返回 None，表示不再触发
    """
    if not times:
        raise ValueError("时间点列表不能为空")
    sorted_times = sorted(times)

    for hhmm in sorted_times:
        candidate = _at_time_of_day(reference, hhmm)
        if candidate >= reference:
            return candidate

    if RepeatType(repeat) == RepeatType.DAILY:
        return _at_time_of_day(reference + timedelta(days=1), sorted_times[0])
    return None


def next_occurrence_ms(times: list[str], repeat: RepeatType, reference: datetime) -> int | None:
    occurrence = next_occurrence(times, repeat, reference)
    return to_ms(occurrence) if occurrence is not None else None
