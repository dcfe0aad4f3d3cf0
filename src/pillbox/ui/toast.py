"""应用内 toast

没有图形界面时，toast 写入日志 (按级别映射到 loguru 级别)，并保留最近的若干条供本地 API 读取。
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any

from pillbox.datamodel import Toast, ToastLevel
from pillbox.events import Bus, E, bus as default_bus
from pillbox.logger import logger

__all__ = ["ToastSink"]

_LOG_LEVELS = {
    ToastLevel.INFO: "INFO",
    ToastLevel.SUCCESS: "SUCCESS",
    ToastLevel.WARNING: "WARNING",
    ToastLevel.ERROR: "ERROR",
}


class ToastSink:
    def __init__(self, bus: Bus = default_bus, maxlen: int = 50) -> None:
        self._recent: deque[dict[str, Any]] = deque(maxlen=maxlen)
        bus.on(E.UI_TOAST, self.show)

    def show(self, toast: Toast) -> None:
        text = toast.title if not toast.body else f"{toast.title} - {toast.body}"
        logger.log(_LOG_LEVELS.get(toast.level, "INFO"), f"[toast] {text}")
        self._recent.append(
            {
                "title": toast.title,
                "body": toast.body,
                "level": toast.level.value,
                "at_epoch": time.time(),
            }
        )

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """最近的 toast，新的在前"""
        items = list(reversed(self._recent))
        return items if limit is None else items[:limit]
