"""提醒存储

全部提醒保存在内存中的一个元组里，每次修改都会构造新的集合替换旧集合，
然后把完整集合序列化为 JSON 写入键值存储 (键: STORAGE_KEY)。
不存在原地修改，因此内存状态与持久化快照始终一致。

计时器不在这里管理，见 pillbox.core.scheduler。
"""

from __future__ import annotations

import json
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterable

from pillbox.config.settings import STORAGE_KEY
from pillbox.core.occurrence import next_occurrence_ms, validate_times
from pillbox.datamodel import HistoryEntry, HistoryType, Reminder, ReminderDraft, RepeatType
from pillbox.logger import logger
from pillbox.storage import kv
from pillbox.utils import add_minutes_ms, now_local, to_ms

__all__ = ["ReminderStore", "ReminderStoreError"]

# 允许通过 update 修改的字段
_PATCHABLE_FIELDS = {
    "name", "dosage", "times", "repeat", "next_at", "paused",
    "patient_name", "patient_age", "send_sms", "phone", "notes",
}


class ReminderStoreError(Exception):
    """持久化失败"""


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ReminderStore:
    def __init__(self, storage_key: str = STORAGE_KEY, clock: Callable[[], datetime] = now_local) -> None:
        self.storage_key = storage_key
        self.clock = clock
        self._reminders: tuple[Reminder, ...] = ()

    # ----------------- 读取 ----------------
    def __len__(self) -> int:
        return len(self._reminders)

    def all(self) -> list[Reminder]:
        return list(self._reminders)

    def get(self, reminder_id: str) -> Reminder | None:
        for reminder in self._reminders:
            if reminder.id == reminder_id:
                return reminder
        return None

    def upcoming(self) -> list[Reminder]:
        """未暂停且有下次触发时间的提醒，按触发时间排序"""
        active = [r for r in self._reminders if not r.paused and r.next_at is not None]
        return sorted(active, key=lambda r: r.next_at)

    def _now_ms(self) -> int:
        return to_ms(self.clock())

    # ----------------- 持久化 ----------------
    async def load(self) -> list[Reminder]:
        """从键值存储读取提醒；数据缺失或损坏时视为没有提醒"""
        try:
            raw = await kv.get_item(self.storage_key)
        except Exception as e:
            logger.error(f"读取提醒数据失败, 按空列表处理: {e}")
            raw = None

        self._reminders = tuple(self._parse(raw))
        logger.info(f"已加载 {len(self._reminders)} 条提醒")
        return self.all()

    def _parse(self, raw: str | None) -> list[Reminder]:
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"提醒数据不是合法 JSON, 按空列表处理: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"提醒数据格式错误 (应为数组, 实际为 {type(data).__name__}), 按空列表处理")
            return []

        reminders: list[Reminder] = []
        seen: set[str] = set()
        for item in data:
            try:
                reminder = Reminder.from_dict(item)
                reminder = replace(reminder, times=validate_times(reminder.times))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"跳过无效的提醒记录: {e}")
                continue
            if reminder.id in seen:
                logger.warning(f"跳过重复的提醒记录: {reminder.id}")
                continue
            seen.add(reminder.id)
            reminders.append(reminder)
        return reminders

    async def _commit(self, reminders: Iterable[Reminder]) -> None:
        self._reminders = tuple(reminders)
        payload = json.dumps([r.to_dict() for r in self._reminders], ensure_ascii=False)
        try:
            await kv.set_item(self.storage_key, payload)
        except Exception as e:
            logger.error(f"保存提醒失败: {e}")
            raise ReminderStoreError(f"无法保存提醒: {e}") from e

    async def _replace_one(self, reminder_id: str, change: Callable[[Reminder], Reminder]) -> Reminder | None:
        current = self.get(reminder_id)
        if current is None:
            logger.warning(f"提醒不存在: {reminder_id}")
            return None
        updated = change(current)
        await self._commit(updated if r.id == reminder_id else r for r in self._reminders)
        return updated

    @staticmethod
    def _with_history(reminder: Reminder, entry: HistoryEntry, **fields: Any) -> Reminder:
        return replace(reminder, history=[*reminder.history, entry], **fields)

    def _next_from_now(self, times: list[str], repeat: RepeatType) -> int | None:
        return next_occurrence_ms(times, repeat, self.clock())

    # ----------------- 修改 ----------------
    async def add(self, draft: ReminderDraft) -> Reminder:
        name = _clean_text(draft.name)
        if not name:
            raise ValueError("请输入药品名称")
        times = validate_times(draft.times)
        repeat = RepeatType(draft.repeat)
        if draft.patient_age is not None and draft.patient_age < 0:
            raise ValueError("患者年龄不能为负数")
        phone = _clean_text(draft.phone)

        reminder = Reminder(
            id=str(uuid.uuid4()),
            name=name,
            dosage=(draft.dosage or "").strip(),
            times=times,
            repeat=repeat,
            next_at=self._next_from_now(times, repeat),
            paused=False,
            created_at=self._now_ms(),
            patient_name=_clean_text(draft.patient_name),
            patient_age=draft.patient_age,
            send_sms=bool(draft.send_sms and phone),
            phone=phone,
            notes=_clean_text(draft.notes),
        )
        await self._commit([*self._reminders, reminder])
        logger.info(f"添加提醒: {reminder.id} - {reminder.name} {reminder.times} ({reminder.repeat.value})")
        return reminder

    async def remove(self, reminder_id: str) -> bool:
        remaining = [r for r in self._reminders if r.id != reminder_id]
        if len(remaining) == len(self._reminders):
            logger.warning(f"要删除的提醒不存在: {reminder_id}")
            return False
        await self._commit(remaining)
        logger.info(f"删除提醒: {reminder_id}")
        return True

    async def update(self, reminder_id: str, **patch: Any) -> Reminder | None:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"不允许修改的字段: {', '.join(sorted(unknown))}")

        if "name" in patch:
            patch["name"] = _clean_text(patch["name"])
            if not patch["name"]:
                raise ValueError("药品名称不能为空")
        if "times" in patch:
            patch["times"] = validate_times(patch["times"])
        if "repeat" in patch:
            patch["repeat"] = RepeatType(patch["repeat"])
        if patch.get("patient_age") is not None and patch["patient_age"] < 0:
            raise ValueError("患者年龄不能为负数")

        def change(reminder: Reminder) -> Reminder:
            updated = replace(reminder, **patch)
            schedule_changed = "times" in patch or "repeat" in patch
            if schedule_changed and "next_at" not in patch:
                updated = replace(updated, next_at=self._next_from_now(updated.times, updated.repeat))
            if updated.send_sms and not updated.phone:
                updated = replace(updated, send_sms=False)
            return updated

        updated = await self._replace_one(reminder_id, change)
        if updated is not None:
            logger.info(f"更新提醒: {reminder_id}, 字段: {sorted(patch)}")
        return updated

    async def toggle_pause(self, reminder_id: str) -> Reminder | None:
        def change(reminder: Reminder) -> Reminder:
            now_ms = self._now_ms()
            if reminder.paused:
                next_at = reminder.next_at
                if next_at is None or next_at < now_ms:
                    next_at = self._next_from_now(reminder.times, reminder.repeat)
                return self._with_history(
                    reminder, HistoryEntry(HistoryType.RESUMED, now_ms), paused=False, next_at=next_at
                )
            return self._with_history(reminder, HistoryEntry(HistoryType.PAUSED, now_ms), paused=True)

        updated = await self._replace_one(reminder_id, change)
        if updated is not None:
            logger.info(f"提醒 {reminder_id} 已{'暂停' if updated.paused else '恢复'}")
        return updated

    async def snooze(self, reminder_id: str, minutes: int) -> Reminder | None:
        if minutes < 1:
            raise ValueError("稍后提醒的分钟数必须大于 0")

        def change(reminder: Reminder) -> Reminder:
            now_ms = self._now_ms()
            entry = HistoryEntry(HistoryType.SNOOZED, now_ms, {"minutes": minutes})
            return self._with_history(reminder, entry, next_at=add_minutes_ms(now_ms, minutes))

        updated = await self._replace_one(reminder_id, change)
        if updated is not None:
            logger.info(f"提醒 {reminder_id} 推迟 {minutes} 分钟")
        return updated

    async def mark_taken(self, reminder_id: str) -> tuple[Reminder | None, bool]:
        """记录已服药。daily 计算下次时间，once 直接移除。返回 (提醒, 是否已移除)"""
        current = self.get(reminder_id)
        if current is None:
            logger.warning(f"要标记已服药的提醒不存在: {reminder_id}")
            return None, False

        taken = self._with_history(current, HistoryEntry(HistoryType.TAKEN, self._now_ms()))
        if taken.repeat == RepeatType.DAILY:
            taken = replace(taken, next_at=self._next_from_now(taken.times, taken.repeat))
            await self._commit(taken if r.id == reminder_id else r for r in self._reminders)
            logger.info(f"提醒 {reminder_id} 已服药, 下次: {taken.next_at}")
            return taken, False

        await self._commit(r for r in self._reminders if r.id != reminder_id)
        logger.info(f"一次性提醒 {reminder_id} 已服药, 已移除")
        return taken, True

    async def add_note(self, reminder_id: str, text: str) -> Reminder | None:
        def change(reminder: Reminder) -> Reminder:
            entry = HistoryEntry(HistoryType.NOTE, self._now_ms(), {"note": text})
            return self._with_history(reminder, entry, notes=text)

        return await self._replace_one(reminder_id, change)

    async def append_history(
        self,
        reminder_id: str,
        entry_type: HistoryType,
        meta: dict | None = None,
        at: int | None = None,
        **fields: Any,
    ) -> Reminder | None:
        """追加一条历史记录，可同时修改其他字段 (如 last_fired_at)。at 缺省为当前时间"""
        def change(reminder: Reminder) -> Reminder:
            entry = HistoryEntry(entry_type, self._now_ms() if at is None else at, meta)
            return self._with_history(reminder, entry, **fields)

        return await self._replace_one(reminder_id, change)

    async def set_next_at(self, reminder_id: str, next_at: int | None) -> Reminder | None:
        return await self._replace_one(reminder_id, lambda r: replace(r, next_at=next_at))

    async def reconcile(self) -> list[str]:
        """启动时校正: 未暂停且 next_at 为空或已过期的提醒按当前时间重新计算

        错过的时间点不会补发，也不会记入历史。返回被修改的提醒 ID。
        """
        now = self.clock()
        now_ms = to_ms(now)
        changed: list[str] = []
        reconciled: list[Reminder] = []
        for reminder in self._reminders:
            if not reminder.paused and (reminder.next_at is None or reminder.next_at < now_ms):
                next_at = next_occurrence_ms(reminder.times, reminder.repeat, now)
                reminder = replace(reminder, next_at=next_at)
                changed.append(reminder.id)
            reconciled.append(reminder)

        if changed:
            await self._commit(reconciled)
            logger.info(f"启动校正: {len(changed)} 条提醒重新计算了下次时间")
        return changed
