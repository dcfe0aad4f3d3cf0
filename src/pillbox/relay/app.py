from __future__ import annotations

import asyncio
import hmac
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

import pillbox.storage.db_config as db_config
from pillbox.config import settings
from pillbox.core.scheduler import Scheduler
from pillbox.datamodel import Reminder
from pillbox.logger import error_log_path, logger
from pillbox.metrics import runtime_metrics
from pillbox.storage.reminder import ReminderStoreError
from pillbox.ui.popup import ReminderPopup
from pillbox.ui.toast import ToastSink

from .logs import LogQuery, read_tail
from .schemas import (
    NoteRequest,
    PingResponse,
    ReminderCreate,
    ReminderPatch,
    RuntimeControl,
    ShutdownRequest,
    SmsRequest,
    SnoozeRequest,
)
from .sms import forward_sms


def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    token_header = request.headers.get("X-Pillbox-Token", "").strip()
    return token_header or None


async def require_api_auth(request: Request) -> None:
    """未配置 PILLBOX_API_TOKEN 时本地 API 不鉴权"""
    expected = settings.PILLBOX_API_TOKEN
    if not expected:
        return
    token = extract_token(request)
    if token and hmac.compare_digest(token, expected):
        return
    raise HTTPException(status_code=401, detail="未授权")


async def _run_action(action: Callable[[], Awaitable[Any]]) -> Any:
    """执行一个会写存储的操作，把校验错误映射为 400，把写入失败映射为 500"""
    try:
        return await action()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ReminderStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _reminder_or_404(reminder: Reminder | None, reminder_id: str) -> dict[str, Any]:
    if reminder is None:
        raise HTTPException(status_code=404, detail=f"提醒不存在: {reminder_id}")
    return reminder.to_dict()


def create_app(
    control: RuntimeControl,
    scheduler: Scheduler | None = None,
    popup: ReminderPopup | None = None,
    toasts: ToastSink | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    app = FastAPI(title="Pillbox API", version="1.0.0")
    authed = [Depends(require_api_auth)]

    def require_scheduler() -> Scheduler:
        if scheduler is None:
            raise HTTPException(status_code=503, detail="调度器尚未就绪")
        return scheduler

    def require_popup() -> ReminderPopup:
        if popup is None:
            raise HTTPException(status_code=503, detail="弹窗尚未就绪")
        return popup

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "scheduler_running": scheduler is not None and scheduler.get_status()["running"],
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    # ----------------- SMS 中继 ----------------
    @app.get("/api/ping")
    async def ping() -> PingResponse:
        return PingResponse(message=settings.PING_MESSAGE or "ping")

    @app.post("/api/sms")
    async def send_sms(payload: SmsRequest) -> JSONResponse:
        status, body = await forward_sms(payload, transport=transport)
        return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))

    # ----------------- 提醒 ----------------
    @app.get("/api/v1/reminders", dependencies=authed)
    async def list_reminders() -> dict[str, Any]:
        items = [r.to_dict() for r in require_scheduler().store.all()]
        return {"items": items, "total": len(items)}

    @app.get("/api/v1/reminders/upcoming", dependencies=authed)
    async def upcoming_reminders(limit: int = 50) -> dict[str, Any]:
        limit = max(1, min(limit, 500))
        items = [r.to_dict() for r in require_scheduler().store.upcoming()[:limit]]
        return {"items": items, "limit": limit}

    @app.post("/api/v1/reminders", dependencies=authed, status_code=201)
    async def create_reminder(payload: ReminderCreate) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.add(payload.to_draft()))
        return reminder.to_dict()

    @app.get("/api/v1/reminders/{reminder_id}", dependencies=authed)
    async def get_reminder(reminder_id: str) -> dict[str, Any]:
        return _reminder_or_404(require_scheduler().store.get(reminder_id), reminder_id)

    @app.patch("/api/v1/reminders/{reminder_id}", dependencies=authed)
    async def patch_reminder(reminder_id: str, payload: ReminderPatch) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.update(reminder_id, **payload.to_patch()))
        return _reminder_or_404(reminder, reminder_id)

    @app.delete("/api/v1/reminders/{reminder_id}", dependencies=authed)
    async def delete_reminder(reminder_id: str) -> dict[str, Any]:
        sched = require_scheduler()
        removed = await _run_action(lambda: sched.remove(reminder_id))
        if not removed:
            raise HTTPException(status_code=404, detail=f"提醒不存在: {reminder_id}")
        return {"ok": True, "id": reminder_id}

    @app.post("/api/v1/reminders/{reminder_id}/pause", dependencies=authed)
    async def pause_reminder(reminder_id: str) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.toggle_pause(reminder_id))
        return _reminder_or_404(reminder, reminder_id)

    @app.post("/api/v1/reminders/{reminder_id}/snooze", dependencies=authed)
    async def snooze_reminder(reminder_id: str, payload: SnoozeRequest) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.snooze(reminder_id, payload.minutes))
        return _reminder_or_404(reminder, reminder_id)

    @app.post("/api/v1/reminders/{reminder_id}/taken", dependencies=authed)
    async def taken_reminder(reminder_id: str) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.mark_taken(reminder_id))
        data = _reminder_or_404(reminder, reminder_id)
        return {"reminder": data, "removed": sched.store.get(reminder_id) is None}

    @app.post("/api/v1/reminders/{reminder_id}/note", dependencies=authed)
    async def note_reminder(reminder_id: str, payload: NoteRequest) -> dict[str, Any]:
        sched = require_scheduler()
        reminder = await _run_action(lambda: sched.add_note(reminder_id, payload.text))
        return _reminder_or_404(reminder, reminder_id)

    # ----------------- 弹窗 ----------------
    @app.get("/api/v1/popup", dependencies=authed)
    async def get_popup() -> dict[str, Any]:
        return {"popup": require_popup().snapshot()}

    @app.post("/api/v1/popup/{action}", dependencies=authed)
    async def popup_action(action: str, request: Request) -> dict[str, Any]:
        current = require_popup()
        if current.payload is None:
            raise HTTPException(status_code=409, detail="当前没有弹窗")

        body: dict[str, Any] = {}
        if await request.body():
            try:
                body = await request.json()
            except ValueError:
                raise HTTPException(status_code=400, detail="请求体必须为 JSON")
            if not isinstance(body, dict):
                raise HTTPException(status_code=400, detail="请求体必须为 JSON 对象")

        if action == "snooze":
            try:
                minutes = SnoozeRequest(minutes=body.get("minutes", current.snooze_minutes)).minutes
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=str(e))
            await _run_action(lambda: current.snooze(minutes))
        elif action == "taken":
            await _run_action(current.taken)
        elif action == "pause":
            await _run_action(current.pause)
        elif action == "delete":
            await _run_action(current.delete)
        elif action == "close":
            current.close()
        elif action == "note":
            text = str(body["text"]) if "text" in body else None
            await _run_action(lambda: current.save_note(text))
        elif action == "sms":
            result = await current.send_sms()
            return {"popup": current.snapshot(), "sms": result.model_dump() if result else None}
        else:
            raise HTTPException(status_code=404, detail=f"未知的弹窗操作: {action}")
        return {"popup": current.snapshot()}

    @app.get("/api/v1/toasts", dependencies=authed)
    async def get_toasts(limit: int = 20) -> dict[str, Any]:
        limit = max(1, min(limit, 50))
        return {"items": toasts.recent(limit) if toasts is not None else []}

    # ----------------- 运维 ----------------
    @app.get("/api/v1/metrics", dependencies=authed)
    async def get_metrics() -> dict[str, Any]:
        scheduler_status: dict[str, Any] = {"running": False, "armed_timers": 0, "reminders": 0}
        if scheduler is not None:
            scheduler_status.update(scheduler.get_status())
        return {
            "runtime": runtime_metrics.snapshot(),
            "components": {
                "db": {"connected": db_config.conn is not None},
                "scheduler": scheduler_status,
                "popup": {"visible": popup is not None and popup.visible},
            },
            "active_tasks": len(asyncio.all_tasks()),
        }

    @app.get("/api/v1/logs", dependencies=authed)
    async def get_logs(
        lines: int = 200,
        level: list[str] = Query(default=[]),
        reminder: str | None = None,
        q: str | None = None,
        stream: str = "main",
    ) -> dict[str, Any]:
        """最近的日志；reminder 只返回与该提醒相关的行"""
        if stream not in ("main", "error"):
            raise HTTPException(status_code=400, detail=f"未知的日志流: {stream}")
        lines = max(1, min(lines, 5000))
        path = Path(settings.PILLBOX_LOG_FILE)
        if stream == "error":
            path = error_log_path(path)

        query = LogQuery.parse(level, keyword=q, reminder_id=reminder)
        tail = await asyncio.to_thread(read_tail, path, lines)
        return {
            "stream": stream,
            "file": str(path),
            "levels": sorted(query.levels),
            "reminder": query.reminder_id or None,
            "lines": query.apply(tail),
        }

    @app.post("/api/v1/admin/shutdown", dependencies=authed)
    async def admin_shutdown(payload: ShutdownRequest) -> dict[str, Any]:
        logger.warning(f"收到远程关闭请求: reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown", "reason": payload.reason}

    return app
