from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

__all__ = [
    "RepeatType", "HistoryType", "HistoryEntry", "Reminder", "ReminderDraft",
    "FiringEvent",
    "ToastLevel", "Toast",
    "NotificationPermission",
]

# 所有时间点均为 epoch 毫秒 (int)，与持久化的 DTO 保持一致


# ----------------- Reminder 数据模型 ----------------
class RepeatType(str, Enum):
    ONCE = "once"
    DAILY = "daily"


class HistoryType(str, Enum):
    FIRED = "fired"
    TAKEN = "taken"
    SNOOZED = "snoozed"
    PAUSED = "paused"
    RESUMED = "resumed"
    MISSED = "missed"
    NOTE = "note"


@dataclass
class HistoryEntry:
    type: HistoryType
    at: int
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        data: dict = {"type": self.type.value, "at": self.at}
        if self.meta is not None:
            data["meta"] = self.meta
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            type=HistoryType(data["type"]),
            at=int(data["at"]),
            meta=data.get("meta"),
        )


@dataclass
class Reminder:
    id: str
    name: str
    dosage: str
    times: List[str]  # HH:MM, 24h, sorted
    repeat: RepeatType
    next_at: Optional[int]  # None: no future occurrence
    paused: bool
    created_at: int
    patient_name: Optional[str] = None
    patient_age: Optional[int] = None
    send_sms: bool = False
    phone: Optional[str] = None
    notes: Optional[str] = None
    history: List[HistoryEntry] = field(default_factory=list)  # append-only
    last_fired_at: Optional[int] = None

    @property
    def sms_enabled(self) -> bool:
        return bool(self.send_sms and self.phone)

    def to_dict(self) -> dict:
        """Persisted / wire DTO (camelCase keys)."""
        return {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "times": list(self.times),
            "repeat": self.repeat.value,
            "nextAt": self.next_at,
            "paused": self.paused,
            "patientName": self.patient_name,
            "patientAge": self.patient_age,
            "sendSms": self.send_sms,
            "phone": self.phone,
            "notes": self.notes,
            "history": [h.to_dict() for h in self.history],
            "createdAt": self.created_at,
            "lastFiredAt": self.last_fired_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Reminder":
        next_at = data.get("nextAt")
        last_fired_at = data.get("lastFiredAt")
        patient_age = data.get("patientAge")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            dosage=str(data.get("dosage") or ""),
            times=[str(t) for t in data["times"]],
            repeat=RepeatType(data["repeat"]),
            next_at=int(next_at) if next_at is not None else None,
            paused=bool(data.get("paused")),
            created_at=int(data["createdAt"]),
            patient_name=data.get("patientName"),
            patient_age=int(patient_age) if patient_age is not None else None,
            send_sms=bool(data.get("sendSms")),
            phone=data.get("phone"),
            notes=data.get("notes"),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            last_fired_at=int(last_fired_at) if last_fired_at is not None else None,
        )


@dataclass
class ReminderDraft:
    """用户提交的新提醒"""
    name: str
    times: List[str]
    repeat: RepeatType = RepeatType.DAILY
    dosage: str = ""
    patient_name: Optional[str] = None
    patient_age: Optional[int] = None
    send_sms: bool = False
    phone: Optional[str] = None
    notes: Optional[str] = None


# ----------------- 事件数据模型 ----------------
@dataclass
class FiringEvent:
    id: str
    name: str
    dosage: str
    patient_name: Optional[str]
    patient_age: Optional[int]
    phone: Optional[str]
    notes: Optional[str]
    history: List[HistoryEntry]
    next_at: Optional[int]

    @classmethod
    def from_reminder(cls, reminder: Reminder) -> "FiringEvent":
        return cls(
            id=reminder.id,
            name=reminder.name,
            dosage=reminder.dosage,
            patient_name=reminder.patient_name,
            patient_age=reminder.patient_age,
            phone=reminder.phone,
            notes=reminder.notes,
            history=list(reminder.history),
            next_at=reminder.next_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "patientName": self.patient_name,
            "patientAge": self.patient_age,
            "phone": self.phone,
            "notes": self.notes,
            "history": [h.to_dict() for h in self.history],
            "nextAt": self.next_at,
        }


class ToastLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Toast:
    title: str
    body: Optional[str] = None
    level: ToastLevel = ToastLevel.INFO


# ----------------- Notification 数据模型 ----------------
class NotificationPermission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"
