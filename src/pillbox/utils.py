from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from pillbox.config import settings

__all__ = ["local_tz", "now_local", "now_ms", "to_ms", "from_ms", "ms_to_local_str",
           "start_of_day_ms", "add_minutes_ms"]


def local_tz(name: str | None = None) -> tzinfo:
    """HH:MM 所使用的时区，未配置时使用系统本地时区"""
    name = settings.PILLBOX_TIMEZONE if name is None else name
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo


def now_local() -> datetime:
    """获取当前时间 (带时区)"""
    return datetime.now(timezone.utc).astimezone(local_tz())


def now_ms() -> int:
    return to_ms(datetime.now(timezone.utc))


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=local_tz())
    return int(dt.timestamp() * 1000)


def from_ms(ms: int, tz: tzinfo | None = None) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=tz or local_tz())


def ms_to_local_str(ms: int | None, tz: tzinfo | None = None) -> str | None:
    """格式: 'Sun, Oct 18 • 9:00 AM'，无时间点时返回 None"""
    if ms is None:
        return None
    dt = from_ms(ms, tz)
    hour = dt.strftime("%I").lstrip("0") or "12"
    return f"{dt:%a, %b} {dt.day} • {hour}:{dt:%M %p}"


def start_of_day_ms(dt: datetime) -> int:
    return to_ms(dt.replace(hour=0, minute=0, second=0, microsecond=0))


def add_minutes_ms(ms: int, minutes: float) -> int:
    return ms + int(timedelta(minutes=minutes).total_seconds() * 1000)
