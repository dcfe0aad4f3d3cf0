from __future__ import annotations

import asyncio
from dataclasses import dataclass

from pydantic import BaseModel, Field

from pillbox.datamodel import ReminderDraft, RepeatType


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


# ----------------- SMS 中继 ----------------
class SmsRequest(BaseModel):
    # 两个字段都允许缺失，由路由返回约定的 400 错误而不是 422
    to: str | None = None
    message: str | None = None


class SmsResponse(BaseModel):
    success: bool
    id: str | None = None
    error: str | None = None


class PingResponse(BaseModel):
    message: str


# ----------------- 提醒 API ----------------
class ReminderCreate(BaseModel):
    name: str
    dosage: str = ""
    times: list[str] = Field(default_factory=lambda: ["09:00"])
    repeat: RepeatType = RepeatType.DAILY
    patientName: str | None = None
    patientAge: int | None = None
    sendSms: bool = False
    phone: str | None = None
    notes: str | None = None

    def to_draft(self) -> ReminderDraft:
        return ReminderDraft(
            name=self.name,
            dosage=self.dosage,
            times=self.times,
            repeat=self.repeat,
            patient_name=self.patientName,
            patient_age=self.patientAge,
            send_sms=self.sendSms,
            phone=self.phone,
            notes=self.notes,
        )


_PATCH_FIELD_MAP = {
    "nextAt": "next_at",
    "patientName": "patient_name",
    "patientAge": "patient_age",
    "sendSms": "send_sms",
}
_NULLABLE_PATCH_FIELDS = {"nextAt", "patientName", "patientAge", "phone", "notes"}


class ReminderPatch(BaseModel):
    name: str | None = None
    dosage: str | None = None
    times: list[str] | None = None
    repeat: RepeatType | None = None
    nextAt: int | None = None
    paused: bool | None = None
    patientName: str | None = None
    patientAge: int | None = None
    sendSms: bool | None = None
    phone: str | None = None
    notes: str | None = None

    def to_patch(self) -> dict:
        """只包含请求中显式给出的字段，键名转换为 Reminder 的属性名

        不可为空的字段传 null 时视为未修改。
        """
        fields = self.model_dump(exclude_unset=True)
        return {
            _PATCH_FIELD_MAP.get(k, k): v
            for k, v in fields.items()
            if v is not None or k in _NULLABLE_PATCH_FIELDS
        }


class SnoozeRequest(BaseModel):
    minutes: int = Field(default=10, ge=1, le=24 * 60)


class NoteRequest(BaseModel):
    text: str = ""
