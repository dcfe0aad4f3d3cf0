"""SMS 中继: 把 {to, message} 转发到 Twilio

凭据在每次请求时从 settings 读取，未配置时返回 400。返回 (HTTP 状态码, 响应体)。
"""

from __future__ import annotations

import httpx

from pillbox.config import settings
from pillbox.logger import logger

from .schemas import SmsRequest, SmsResponse

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

MISSING_FIELDS_ERROR = "Missing 'to' or 'message'"
NOT_CONFIGURED_ERROR = "SMS not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER."


def twilio_messages_url(account_sid: str) -> str:
    return f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json"


async def forward_sms(
    request: SmsRequest,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[int, SmsResponse]:
    if not request.to or not request.message:
        return 400, SmsResponse(success=False, error=MISSING_FIELDS_ERROR)

    sid = settings.TWILIO_ACCOUNT_SID
    token = settings.TWILIO_AUTH_TOKEN
    sender = settings.TWILIO_FROM_NUMBER
    if not (sid and token and sender):
        logger.warning("收到 SMS 请求, 但未配置 Twilio 凭据")
        return 400, SmsResponse(success=False, error=NOT_CONFIGURED_ERROR)

    try:
        async with httpx.AsyncClient(timeout=settings.SMS_TIMEOUT_SECONDS, transport=transport) as client:
            resp = await client.post(
                twilio_messages_url(sid),
                auth=(sid, token),
                data={"To": request.to, "From": sender, "Body": request.message},
            )
        data = resp.json()
    except Exception as e:
        logger.exception(f"调用 Twilio 失败: {e}")
        return 500, SmsResponse(success=False, error=str(e) or "Unknown error")

    if not isinstance(data, dict):
        data = {}
    if not resp.is_success:
        error = data.get("message") or "Failed to send"
        logger.warning(f"Twilio 返回错误: status={resp.status_code}, error={error}")
        return resp.status_code, SmsResponse(success=False, error=error)

    logger.info(f"SMS 已通过 Twilio 发送: to={request.to}, sid={data.get('sid')}")
    return 200, SmsResponse(success=True, id=data.get("sid"))
