"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

提醒触发后由调度器广播 REMINDER_FIRED，弹窗等展示层订阅该事件；
调度器本身不持有任何展示层的引用。
处理器抛出的异常统一记录日志，不会影响调度循环。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Any, Awaitable, Callable, Union

from pillbox.logger import logger

Handler = Callable[..., Union[Awaitable[None], None]]

# 事件名集中定义
class E:
    REMINDER_FIRED = "reminder.fired"      # payload: FiringEvent
    REMINDER_MISSED = "reminder.missed"    # reminder_id, fired_at
    REMINDER_REMOVED = "reminder.removed"  # reminder_id
    UI_TOAST = "ui.toast"                  # payload: Toast


class Bus(AsyncIOEventEmitter):
    def __init__(self) -> None:
        super().__init__()
        super().on("error", self._on_handler_error)

    @staticmethod
    def _on_handler_error(error: BaseException) -> None:
        logger.opt(exception=error).error(f"事件处理器异常: {error}")

    def on(self, event: str, handler: Handler | None = None) -> Any:
        """注册事件处理器，可作为装饰器使用"""
        def decorator(f: Handler) -> Handler:
            logger.debug(f"注册事件处理器: {event} -> {getattr(f, '__name__', f)}")
            super(Bus, self).on(event, f)
            return f

        if handler is None:
            return decorator
        return decorator(handler)

    def safe_emit(self, event: str, *args: Any, **kwargs: Any) -> bool:
        """广播事件，同步处理器抛出的异常只记录不传播"""
        try:
            return self.emit(event, *args, **kwargs)
        except Exception as e:
            logger.exception(f"广播事件失败: {event}: {e}")
            return False


bus = Bus()

__all__ = ["bus", "Bus", "E"]
