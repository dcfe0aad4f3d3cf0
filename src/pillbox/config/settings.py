import os
from dotenv import load_dotenv
from pillbox.logger import logger
load_dotenv()

__all__ = [
    "PILLBOX_TIMEZONE", "PILLBOX_DB_PATH", "PILLBOX_LOG_FILE", "PILLBOX_LOG_LEVEL", "PILLBOX_CONSOLE_LOG_LEVEL",
    "PILLBOX_SYSTEM_NOTIFICATIONS", "PILLBOX_SOUND",
    "MISSED_DOSE_WINDOW_MINUTES", "POPUP_AUTO_HIDE_SECONDS", "DEFAULT_SNOOZE_MINUTES",
    "ENABLE_HTTP_SERVER", "HTTP_HOST", "HTTP_PORT",
    "SMS_RELAY_URL", "SMS_TIMEOUT_SECONDS",
    "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER",
    "PING_MESSAGE", "PILLBOX_API_TOKEN", "STORAGE_KEY",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 不是数字, 已回退到 {default}")
        return default
    if value < 0:
        logger.warning(f"{name}={raw!r} 不能为负数, 已回退到 {default}")
        return default
    return value


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 不是整数, 已回退到 {default}")
        return default


# 存放全部提醒的唯一记录键
STORAGE_KEY = "pillbox.reminders.v1"

# HH:MM 所使用的时区, 留空表示系统本地时区
PILLBOX_TIMEZONE = os.getenv("PILLBOX_TIMEZONE", "").strip()

PILLBOX_DB_PATH = os.getenv("PILLBOX_DB_PATH", "data/pillbox.db")
PILLBOX_LOG_FILE = os.getenv("PILLBOX_LOG_FILE", "logs/pillbox.log")
PILLBOX_LOG_LEVEL = os.getenv("PILLBOX_LOG_LEVEL", "DEBUG").strip().upper()
PILLBOX_CONSOLE_LOG_LEVEL = os.getenv("PILLBOX_CONSOLE_LOG_LEVEL", "INFO").strip().upper()


# 通知
PILLBOX_SYSTEM_NOTIFICATIONS = _parse_bool("PILLBOX_SYSTEM_NOTIFICATIONS", True)
PILLBOX_SOUND = _parse_bool("PILLBOX_SOUND", True)
if not PILLBOX_SYSTEM_NOTIFICATIONS:
    logger.warning("系统通知已禁用, 提醒将仅以 toast 形式显示")


# 计时
MISSED_DOSE_WINDOW_MINUTES = _parse_float("MISSED_DOSE_WINDOW_MINUTES", 30.0)
POPUP_AUTO_HIDE_SECONDS = _parse_float("POPUP_AUTO_HIDE_SECONDS", 30.0)
DEFAULT_SNOOZE_MINUTES = _parse_int("DEFAULT_SNOOZE_MINUTES", 10)
if DEFAULT_SNOOZE_MINUTES < 1:
    logger.warning(f"DEFAULT_SNOOZE_MINUTES={DEFAULT_SNOOZE_MINUTES} 非法, 已回退到 10")
    DEFAULT_SNOOZE_MINUTES = 10


# 本地 API 与 SMS 中继
ENABLE_HTTP_SERVER = _parse_bool("ENABLE_HTTP_SERVER", True)
HTTP_HOST = os.getenv("HTTP_HOST", "127.0.0.1")
HTTP_PORT = _parse_int("HTTP_PORT", 8080)

SMS_RELAY_URL = os.getenv("SMS_RELAY_URL", "").strip() or f"http://{HTTP_HOST}:{HTTP_PORT}/api/sms"
SMS_TIMEOUT_SECONDS = _parse_float("SMS_TIMEOUT_SECONDS", 10.0)

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")
if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER):
    logger.debug("未设置 Twilio 凭据, /api/sms 将返回 400")

PING_MESSAGE = os.getenv("PING_MESSAGE", "ping")

# 设置后 /api/v1 下的接口需要携带 Bearer token 或 X-Pillbox-Token 头
PILLBOX_API_TOKEN = os.getenv("PILLBOX_API_TOKEN", "").strip()
