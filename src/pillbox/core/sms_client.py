"""SMS 中继客户端

向中继端点 POST {to, message}，仅尝试一次，不重试。
任何失败只记录日志并通过 toast 给出非阻塞警告，不会影响提醒流程。
"""

from __future__ import annotations

import httpx

from pillbox.config import settings
from pillbox.datamodel import Reminder, ToastLevel, Toast
from pillbox.events import Bus, E, bus as default_bus
from pillbox.logger import logger
from pillbox.metrics import runtime_metrics
from pillbox.relay.schemas import SmsRequest, SmsResponse

__all__ = ["SmsClient", "firing_message", "manual_message"]


def firing_message(reminder: Reminder) -> str:
    dosage = f" ({reminder.dosage})" if reminder.dosage else ""
    return f"Time to take {reminder.name}{dosage}"


def manual_message(name: str, dosage: str | None) -> str:
    return f"Reminder: {name} {dosage or ''}"


class SmsClient:
    def __init__(
        self,
        relay_url: str | None = None,
        timeout: float | None = None,
        bus: Bus = default_bus,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.relay_url = relay_url or settings.SMS_RELAY_URL
        self.timeout = settings.SMS_TIMEOUT_SECONDS if timeout is None else timeout
        self.bus = bus
        self.transport = transport

    def _warn(self, detail: str) -> None:
        self.bus.safe_emit(E.UI_TOAST, Toast(title="SMS send failed", body=detail, level=ToastLevel.WARNING))

    async def send(self, to: str, message: str) -> SmsResponse:
        request = SmsRequest(to=to, message=message)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.relay_url, json=request.model_dump())
        except httpx.HTTPError as e:
            logger.warning(f"SMS 请求异常: {e!r}")
            runtime_metrics.record_sms(False)
            self._warn(str(e) or e.__class__.__name__)
            return SmsResponse(success=False, error=str(e) or e.__class__.__name__)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.is_success and data.get("success", True):
            runtime_metrics.record_sms(True)
            logger.info(f"SMS 已发送: to={to}, id={data.get('id')}")
            return SmsResponse(success=True, id=data.get("id"))

        error = data.get("error") or resp.reason_phrase or f"HTTP {resp.status_code}"
        logger.warning(f"SMS 发送失败: {error}")
        runtime_metrics.record_sms(False)
        self._warn(error)
        return SmsResponse(success=False, error=error)

    async def send_for_reminder(self, reminder: Reminder) -> SmsResponse | None:
        if not reminder.sms_enabled:
            return None
        return await self.send(reminder.phone, firing_message(reminder))
