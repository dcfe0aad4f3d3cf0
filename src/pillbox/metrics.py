"""
简单的运行时指标收集类，统计提醒触发、服药确认、SMS 发送等次数，方便后续扩展和监控。
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class RuntimeMetrics:
    reminder_fired_count: int = 0
    reminder_taken_count: int = 0
    reminder_snoozed_count: int = 0
    reminder_missed_count: int = 0
    fire_error_count: int = 0
    notification_fallback_count: int = 0
    sms_sent_count: int = 0
    sms_failed_count: int = 0
    last_fired_at: float | None = None

    def record_fired(self) -> None:
        self.reminder_fired_count += 1
        self.last_fired_at = time.time()

    def record_taken(self) -> None:
        self.reminder_taken_count += 1

    def record_snoozed(self) -> None:
        self.reminder_snoozed_count += 1

    def record_missed(self) -> None:
        self.reminder_missed_count += 1

    def record_fire_error(self) -> None:
        self.fire_error_count += 1

    def record_notification_fallback(self) -> None:
        self.notification_fallback_count += 1

    def record_sms(self, ok: bool) -> None:
        if ok:
            self.sms_sent_count += 1
        else:
            self.sms_failed_count += 1

    def snapshot(self) -> dict:
        return {
            "reminder_fired_count": self.reminder_fired_count,
            "reminder_taken_count": self.reminder_taken_count,
            "reminder_snoozed_count": self.reminder_snoozed_count,
            "reminder_missed_count": self.reminder_missed_count,
            "fire_error_count": self.fire_error_count,
            "notification_fallback_count": self.notification_fallback_count,
            "sms_sent_count": self.sms_sent_count,
            "sms_failed_count": self.sms_failed_count,
            "last_fired_at_epoch": self.last_fired_at,
            "last_fired_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_fired_at))
                if self.last_fired_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
