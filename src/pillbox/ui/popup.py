"""提醒弹窗状态

订阅 REMINDER_FIRED / REMINDER_MISSED，维护单个弹窗槽位: 新的触发会直接覆盖当前显示的内容 (后到者优先，不排队)。
所有操作通过构造时注入的 ReminderActions 完成，弹窗本身不访问存储。
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable

from pillbox.config import settings
from pillbox.core.scheduler import ReminderActions
from pillbox.core.sms_client import SmsClient, manual_message
from pillbox.datamodel import FiringEvent, HistoryType
from pillbox.events import Bus, E, bus as default_bus
from pillbox.logger import logger
from pillbox.relay.schemas import SmsResponse
from pillbox.utils import from_ms, ms_to_local_str, now_local, start_of_day_ms

__all__ = ["ReminderPopup"]


class ReminderPopup:
    def __init__(
        self,
        actions: ReminderActions,
        bus: Bus = default_bus,
        sms: SmsClient | None = None,
        auto_hide_seconds: float | None = None,
        snooze_minutes: int | None = None,
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self.actions = actions
        self.bus = bus
        self.sms = sms
        self.auto_hide_seconds = settings.POPUP_AUTO_HIDE_SECONDS if auto_hide_seconds is None else auto_hide_seconds
        self.snooze_minutes = settings.DEFAULT_SNOOZE_MINUTES if snooze_minutes is None else snooze_minutes
        self.clock = clock

        self.payload: FiringEvent | None = None
        self.visible = False
        self.missed = False
        self.sending = False
        self.note_draft = ""
        self._hide_handle: asyncio.TimerHandle | None = None

        bus.on(E.REMINDER_FIRED, self.on_fired)
        bus.on(E.REMINDER_MISSED, self.on_missed)

    # ----------------- 事件 ----------------
    def on_fired(self, event: FiringEvent) -> None:
        if self.visible and self.payload is not None and self.payload.id != event.id:
            logger.debug(f"弹窗被新的提醒覆盖: {self.payload.id} -> {event.id}")
        self.payload = event
        self.visible = True
        self.missed = False
        self.note_draft = event.notes or ""
        self._schedule_auto_hide()

    def on_missed(self, reminder_id: str, *_: Any) -> None:
        if self.payload is not None and self.payload.id == reminder_id:
            self.missed = True

    def _schedule_auto_hide(self) -> None:
        self._cancel_auto_hide()
        loop = asyncio.get_running_loop()
        self._hide_handle = loop.call_later(self.auto_hide_seconds, self._auto_hide)

    def _cancel_auto_hide(self) -> None:
        if self._hide_handle is not None:
            self._hide_handle.cancel()
            self._hide_handle = None

    def _auto_hide(self) -> None:
        # 仅隐藏，保留内容以便显示漏服状态
        self._hide_handle = None
        self.visible = False

    def hide(self) -> None:
        self._cancel_auto_hide()
        self.visible = False

    # ----------------- 操作 ----------------
    async def snooze(self, minutes: int | None = None) -> bool:
        if self.payload is None:
            return False
        await self.actions.snooze(self.payload.id, minutes or self.snooze_minutes)
        self.hide()
        return True

    async def taken(self) -> bool:
        if self.payload is None:
            return False
        await self.actions.mark_taken(self.payload.id)
        self.hide()
        return True

    async def pause(self) -> bool:
        if self.payload is None:
            return False
        await self.actions.toggle_pause(self.payload.id)
        return True

    async def delete(self) -> bool:
        if self.payload is None:
            return False
        await self.actions.remove(self.payload.id)
        self.hide()
        return True

    def close(self) -> None:
        self.hide()
        self.payload = None

    async def save_note(self, text: str | None = None) -> bool:
        if self.payload is None:
            return False
        if text is not None:
            self.note_draft = text
        await self.actions.add_note(self.payload.id, self.note_draft)
        self.payload.notes = self.note_draft
        return True

    async def send_sms(self) -> SmsResponse | None:
        """手动发送一条 SMS；无号码或未配置 SMS 客户端时不做任何事"""
        if self.payload is None or not self.payload.phone or self.sms is None:
            return None
        self.sending = True
        try:
            return await self.sms.send(self.payload.phone, manual_message(self.payload.name, self.payload.dosage))
        finally:
            self.sending = False

    # ----------------- 展示 ----------------
    def progress(self) -> tuple[int, int]:
        """今日已服 / 今日应服

        应服次数按今日 fired 记录估算，没有记录时退化为 1 (有 next_at) 或 0，最小为 1。
        """
        if self.payload is None:
            return 0, 1
        now = self.clock()
        start = start_of_day_ms(now)
        history = self.payload.history
        taken_today = sum(1 for h in history if h.type == HistoryType.TAKEN and h.at >= start)
        fired_today = sum(
            1 for h in history
            if h.type == HistoryType.FIRED and from_ms(h.at, now.tzinfo).date() == now.date()
        )
        total_today = 1 if self.payload.next_at else 0
        return taken_today, max(1, fired_today or total_today)

    def snapshot(self) -> dict[str, Any] | None:
        if self.payload is None:
            return None
        taken_today, doses_today = self.progress()
        data = self.payload.to_dict()
        data["history"] = list(reversed(data["history"]))
        data.update(
            {
                "visible": self.visible,
                "missed": self.missed,
                "sending": self.sending,
                "noteDraft": self.note_draft,
                "scheduled": ms_to_local_str(self.payload.next_at, self.clock().tzinfo) or "Now",
                "takenToday": taken_today,
                "dosesToday": doses_today,
                "progressPercent": min(100, round(taken_today / doses_today * 100)),
            }
        )
        return data
