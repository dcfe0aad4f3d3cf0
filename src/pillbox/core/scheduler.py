"""提醒调度器

每个未暂停且有 next_at 的提醒对应一个 asyncio.Task，睡眠到 next_at 后触发。
触发顺序: 通知 -> 广播 REMINDER_FIRED -> 记录 fired 历史 -> (可选) SMS -> 漏服检查 -> 滚动到下次。

注意:
- 提醒集合变化 (新增/删除) 时会清空并重建所有计时器，直接使用已保存的 next_at，不重新计算；
- 正在触发的任务在开始工作前已从计时表中移除，全量重建既不会取消它，也不会按同一时间点再装载一次；
- 单个提醒触发过程中的任何异常只记录日志，不影响其他提醒；
- 写盘失败 (ReminderStoreError) 时内存已是新状态，计时器先按内存同步再抛出异常；
- 漏服检查每次触发各自独立，只有已服药、删除和停止会取消。
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, TypeVar

from pillbox.config import settings
from pillbox.core.occurrence import next_occurrence_ms
from pillbox.core.sms_client import SmsClient
from pillbox.datamodel import FiringEvent, HistoryType, Reminder, ReminderDraft, RepeatType, ToastLevel
from pillbox.events import Bus, E, bus as default_bus
from pillbox.logger import logger
from pillbox.metrics import runtime_metrics
from pillbox.notify.emitter import NotificationEmitter
from pillbox.storage.reminder import ReminderStore, ReminderStoreError
from pillbox.utils import from_ms, to_ms

__all__ = ["ReminderActions", "Scheduler"]

T = TypeVar("T")


class ReminderActions(ABC):
    """弹窗等展示层可以调用的操作，通过构造函数注入"""

    @abstractmethod
    async def snooze(self, reminder_id: str, minutes: int) -> Reminder | None: ...

    @abstractmethod
    async def mark_taken(self, reminder_id: str) -> Reminder | None: ...

    @abstractmethod
    async def remove(self, reminder_id: str) -> bool: ...

    @abstractmethod
    async def toggle_pause(self, reminder_id: str) -> Reminder | None: ...

    @abstractmethod
    async def mark_missed(self, reminder_id: str) -> Reminder | None: ...

    @abstractmethod
    async def add_note(self, reminder_id: str, text: str) -> Reminder | None: ...


class Scheduler(ReminderActions):
    def __init__(
        self,
        store: ReminderStore,
        emitter: NotificationEmitter,
        sms: SmsClient,
        bus: Bus = default_bus,
        missed_window_minutes: float | None = None,
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.sms = sms
        self.bus = bus
        self.missed_window_minutes = (
            settings.MISSED_DOSE_WINDOW_MINUTES if missed_window_minutes is None else missed_window_minutes
        )
        self._timers: dict[str, asyncio.Task] = {}
        self._missed_checks: dict[str, set[asyncio.Task]] = {}  # 每次触发一个检查
        self._firing: dict[str, int | None] = {}  # id -> 正在触发的 next_at
        self._running = False
        self._last_fire_at_epoch: float | None = None

    # ----------------- 生命周期 ----------------
    async def start(self) -> None:
        """校正过期的 next_at 并为所有提醒装载计时器"""
        await self.store.reconcile()
        self._running = True
        self._rearm_all()
        logger.info(f"调度器已启动, 已装载 {len(self._timers)} 个计时器")

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._timers.values(), *(t for checks in self._missed_checks.values() for t in checks)]
        self._timers.clear()
        self._missed_checks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("调度器已停止")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "armed_timers": len(self._timers),
            "pending_missed_checks": sum(len(checks) for checks in self._missed_checks.values()),
            "firing": len(self._firing),
            "reminders": len(self.store),
            "last_fire_at_epoch": self._last_fire_at_epoch,
        }

    def is_armed(self, reminder_id: str) -> bool:
        return reminder_id in self._timers

    def armed_ids(self) -> list[str]:
        return sorted(self._timers)

    # ----------------- 计时器 ----------------
    def _now_ms(self) -> int:
        return to_ms(self.store.clock())

    def _cancel_timer(self, reminder_id: str) -> None:
        task = self._timers.pop(reminder_id, None)
        if task is not None:
            task.cancel()
            logger.trace(f"取消计时器: {reminder_id}")

    def _cancel_missed_checks(self, reminder_id: str) -> None:
        for task in self._missed_checks.pop(reminder_id, set()):
            task.cancel()

    def _arm(self, reminder: Reminder) -> None:
        self._cancel_timer(reminder.id)
        if not self._running or reminder.paused or reminder.next_at is None:
            return
        # 正在触发的时间点由触发任务自己滚动，不能再装载一次
        if reminder.id in self._firing and self._firing[reminder.id] == reminder.next_at:
            return
        delay = max(0.0, (reminder.next_at - self._now_ms()) / 1000)
        self._timers[reminder.id] = asyncio.create_task(
            self._run_timer(reminder.id, delay),
            name=f"pillbox-timer-{reminder.id}",
        )
        logger.trace(f"装载计时器: {reminder.id} ({reminder.name}), {delay:.1f}s 后触发")

    def _rearm_all(self) -> None:
        for reminder_id in list(self._timers):
            self._cancel_timer(reminder_id)
        for reminder in self.store.all():
            self._arm(reminder)

    def _sync_timer(self, reminder_id: str) -> None:
        """按内存中的当前状态装载或取消计时器"""
        reminder = self.store.get(reminder_id)
        if reminder is None:
            self._cancel_timer(reminder_id)
        else:
            self._arm(reminder)

    async def _write(self, reminder_id: str, mutation: Awaitable[T]) -> T:
        """执行一次存储修改；写盘失败时内存已是新状态，计时器按内存同步后再抛出"""
        try:
            return await mutation
        except ReminderStoreError:
            self._sync_timer(reminder_id)
            raise

    async def _run_timer(self, reminder_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        # 先从计时表中摘除自己，之后的全量重建不能取消这次触发
        if self._timers.get(reminder_id) is asyncio.current_task():
            del self._timers[reminder_id]
        try:
            await self._fire(reminder_id)
        except Exception as e:
            runtime_metrics.record_fire_error()
            logger.exception(f"提醒触发失败: {reminder_id}: {e}")

    # ----------------- 触发 ----------------
    async def _fire(self, reminder_id: str) -> None:
        reminder = self.store.get(reminder_id)
        if reminder is None or reminder.paused:
            logger.debug(f"提醒已删除或暂停, 跳过触发: {reminder_id}")
            return

        self._firing[reminder_id] = reminder.next_at
        try:
            await self._dispatch(reminder)
        finally:
            self._firing.pop(reminder_id, None)

    async def _dispatch(self, reminder: Reminder) -> None:
        scheduled_at = reminder.next_at
        self._last_fire_at_epoch = time.time()
        runtime_metrics.record_fired()
        logger.info(f"提醒触发: {reminder.id} - {reminder.name}")

        try:
            await self.emitter.notify_reminder(reminder)
        except Exception as e:
            logger.exception(f"提醒通知失败: {reminder.id}: {e}")

        self.bus.safe_emit(E.REMINDER_FIRED, FiringEvent.from_reminder(reminder))

        fired_at = self._now_ms()
        try:
            await self.store.append_history(reminder.id, HistoryType.FIRED, at=fired_at, last_fired_at=fired_at)
        except Exception as e:
            runtime_metrics.record_fire_error()
            logger.exception(f"记录 fired 历史失败: {reminder.id}: {e}")

        if reminder.sms_enabled:
            try:
                await self.sms.send_for_reminder(reminder)
            except Exception as e:
                logger.exception(f"SMS 发送异常: {reminder.id}: {e}")

        self._schedule_missed_check(reminder.id, fired_at)
        await self._rollover(reminder.id, scheduled_at)

    async def _rollover(self, reminder_id: str, scheduled_at: int | None) -> None:
        current = self.store.get(reminder_id)
        if current is None or current.paused:
            return

        # 触发期间用户修改过 next_at (如稍后提醒)，保留用户的值
        if current.next_at != scheduled_at:
            logger.debug(f"触发期间 next_at 已被修改, 保留: {reminder_id}")
            self._arm(current)
            return

        if current.repeat == RepeatType.DAILY:
            # 参考时间至少晚于本次计划时间，避免同一时间点重复触发
            now = self.store.clock()
            reference_ms = max(to_ms(now), (scheduled_at or 0) + 1)
            next_at = next_occurrence_ms(current.times, current.repeat, from_ms(reference_ms, now.tzinfo))
            updated = await self._write(reminder_id, self.store.set_next_at(reminder_id, next_at))
            if updated is not None:
                self._arm(updated)
            self.emitter.toast(f"Scheduled next dose for {current.name}", level=ToastLevel.SUCCESS)
            return

        await self._write(reminder_id, self.store.remove(reminder_id))
        self._cancel_timer(reminder_id)
        self._rearm_all()
        self.bus.safe_emit(E.REMINDER_REMOVED, reminder_id)
        self.emitter.toast(f"Completed one-time reminder for {current.name}", level=ToastLevel.SUCCESS)

    # ----------------- 漏服检查 ----------------
    def _schedule_missed_check(self, reminder_id: str, fired_at: int) -> None:
        # 同一提醒在窗口内再次触发时，之前的检查继续有效
        if not self._running:
            return
        task = asyncio.create_task(
            self._run_missed_check(reminder_id, fired_at, self.missed_window_minutes * 60),
            name=f"pillbox-missed-{reminder_id}-{fired_at}",
        )
        self._missed_checks.setdefault(reminder_id, set()).add(task)

    def _discard_missed_check(self, reminder_id: str, task: asyncio.Task) -> None:
        checks = self._missed_checks.get(reminder_id)
        if checks is None:
            return
        checks.discard(task)
        if not checks:
            del self._missed_checks[reminder_id]

    async def _run_missed_check(self, reminder_id: str, fired_at: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._discard_missed_check(reminder_id, asyncio.current_task())

        reminder = self.store.get(reminder_id)
        if reminder is None:
            return
        taken = any(h.type == HistoryType.TAKEN and h.at >= fired_at for h in reminder.history)
        if taken:
            return
        try:
            await self.mark_missed(reminder_id)
        except Exception as e:
            logger.exception(f"标记漏服失败: {reminder_id}: {e}")

    # ----------------- 操作 ----------------
    async def add(self, draft: ReminderDraft) -> Reminder:
        try:
            reminder = await self.store.add(draft)
        finally:
            self._rearm_all()
        self.emitter.toast(f"Reminder added for {reminder.name}", level=ToastLevel.SUCCESS)
        return reminder

    async def remove(self, reminder_id: str) -> bool:
        self._cancel_timer(reminder_id)
        self._cancel_missed_checks(reminder_id)
        removed = await self._write(reminder_id, self.store.remove(reminder_id))
        if removed:
            self._rearm_all()
            self.bus.safe_emit(E.REMINDER_REMOVED, reminder_id)
        return removed

    async def update(self, reminder_id: str, **patch: Any) -> Reminder | None:
        updated = await self._write(reminder_id, self.store.update(reminder_id, **patch))
        if updated is not None:
            self._arm(updated)
        return updated

    async def toggle_pause(self, reminder_id: str) -> Reminder | None:
        updated = await self._write(reminder_id, self.store.toggle_pause(reminder_id))
        if updated is None:
            return None
        if updated.paused:
            self._cancel_timer(reminder_id)
            self.emitter.toast(f"Paused {updated.name}")
        else:
            self._arm(updated)
            self.emitter.toast(f"Resumed {updated.name}")
        return updated

    async def snooze(self, reminder_id: str, minutes: int) -> Reminder | None:
        updated = await self._write(reminder_id, self.store.snooze(reminder_id, minutes))
        if updated is None:
            return None
        runtime_metrics.record_snoozed()
        self._arm(updated)
        self.emitter.toast(f"Snoozed for {minutes} min")
        return updated

    async def mark_taken(self, reminder_id: str) -> Reminder | None:
        reminder, removed = await self._write(reminder_id, self.store.mark_taken(reminder_id))
        if reminder is None:
            return None
        runtime_metrics.record_taken()
        self._cancel_missed_checks(reminder_id)
        if removed:
            self._cancel_timer(reminder_id)
            self._rearm_all()
            self.bus.safe_emit(E.REMINDER_REMOVED, reminder_id)
            self.emitter.toast(f"Completed one-time reminder for {reminder.name}", level=ToastLevel.SUCCESS)
        else:
            self._arm(reminder)
            self.emitter.toast(f"Great! Next dose for {reminder.name} scheduled.", level=ToastLevel.SUCCESS)
        return reminder

    async def mark_missed(self, reminder_id: str) -> Reminder | None:
        reminder = await self.store.append_history(reminder_id, HistoryType.MISSED)
        if reminder is None:
            return None
        runtime_metrics.record_missed()
        logger.warning(f"提醒漏服: {reminder.id} - {reminder.name}")
        self.bus.safe_emit(E.REMINDER_MISSED, reminder_id, reminder.history[-1].at)
        self.emitter.toast("Reminder marked as missed", level=ToastLevel.ERROR)
        return reminder

    async def add_note(self, reminder_id: str, text: str) -> Reminder | None:
        reminder = await self.store.add_note(reminder_id, text)
        if reminder is not None:
            self.emitter.toast("Note added", level=ToastLevel.SUCCESS)
        return reminder
