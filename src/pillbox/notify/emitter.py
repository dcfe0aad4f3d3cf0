"""通知发送

三级尽力而为的投递:
1. 已授权时发送系统通知 (plyer)；
2. 未授权或系统通知失败时，改为应用内 toast (通过事件总线 E.UI_TOAST 广播)；
3. 无论前两步结果如何，都播放一段提示音，音频错误静默忽略。
"""

from __future__ import annotations

import asyncio
from typing import Callable

from plyer import notification as plyer_notification

from pillbox.config import settings
from pillbox.datamodel import NotificationPermission, Reminder, Toast, ToastLevel
from pillbox.events import Bus, E, bus as default_bus
from pillbox.logger import logger
from pillbox.metrics import runtime_metrics
from pillbox.notify.sound import beep

__all__ = ["NotificationEmitter", "reminder_title", "reminder_body"]

APP_NAME = "Pillbox"


def reminder_title(reminder: Reminder) -> str:
    return f"Time to take {reminder.name}"


def reminder_body(reminder: Reminder) -> str | None:
    return f"Dosage: {reminder.dosage}" if reminder.dosage else None


class NotificationEmitter:
    def __init__(
        self,
        bus: Bus = default_bus,
        system_enabled: bool | None = None,
        sound_enabled: bool | None = None,
        notifier=plyer_notification,
        play_sound: Callable[[], bool] = beep,
    ) -> None:
        self.bus = bus
        self.system_enabled = settings.PILLBOX_SYSTEM_NOTIFICATIONS if system_enabled is None else system_enabled
        self.sound_enabled = settings.PILLBOX_SOUND if sound_enabled is None else sound_enabled
        self.notifier = notifier
        self.play_sound = play_sound
        self.permission = NotificationPermission.DEFAULT

    def request_permission(self) -> NotificationPermission:
        """启动时调用一次；拒绝时之后只使用 toast"""
        if self.permission != NotificationPermission.DEFAULT:
            return self.permission
        if self.system_enabled:
            self.permission = NotificationPermission.GRANTED
        else:
            self.permission = NotificationPermission.DENIED
            logger.info("系统通知未授权, 将使用应用内 toast")
        return self.permission

    def toast(self, title: str, body: str | None = None, level: ToastLevel = ToastLevel.INFO) -> None:
        self.bus.safe_emit(E.UI_TOAST, Toast(title=title, body=body, level=level))

    async def _system_notify(self, title: str, body: str | None) -> bool:
        try:
            await asyncio.to_thread(
                self.notifier.notify,
                title=title,
                message=body or "",
                app_name=APP_NAME,
                timeout=10,
            )
            return True
        except Exception as e:
            logger.warning(f"系统通知发送失败, 改用 toast: {e}")
            return False

    async def _sound(self) -> None:
        if not self.sound_enabled:
            return
        try:
            await asyncio.to_thread(self.play_sound)
        except Exception as e:
            logger.trace(f"提示音失败: {e}")

    async def notify(self, title: str, body: str | None = None) -> bool:
        """发送通知，返回是否使用了系统通知"""
        delivered = False
        if self.permission == NotificationPermission.GRANTED:
            delivered = await self._system_notify(title, body)
        if not delivered:
            runtime_metrics.record_notification_fallback()
            self.toast(title, body)
        await self._sound()
        return delivered

    async def notify_reminder(self, reminder: Reminder) -> bool:
        return await self.notify(reminder_title(reminder), reminder_body(reminder))
