from __future__ import annotations

import asyncio
import time

import uvicorn

from pillbox.config.settings import HTTP_HOST, HTTP_PORT
from pillbox.core.scheduler import Scheduler
from pillbox.logger import logger
from pillbox.ui.popup import ReminderPopup
from pillbox.ui.toast import ToastSink

from .app import create_app
from .schemas import RuntimeControl


async def _wait_shutdown_signal(shutdown_event: asyncio.Event, server: uvicorn.Server) -> None:
    await shutdown_event.wait()
    server.should_exit = True


async def main_loop(
    shutdown_event: asyncio.Event,
    scheduler: Scheduler | None = None,
    popup: ReminderPopup | None = None,
    toasts: ToastSink | None = None,
) -> None:
    control = RuntimeControl(shutdown_event=shutdown_event, started_at=time.time())
    app = create_app(control, scheduler=scheduler, popup=popup, toasts=toasts)

    config = uvicorn.Config(
        app,
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level="info",
        access_log=False,
        log_config=None,
    )
    server = uvicorn.Server(config)
    # 嵌入到主进程时，统一由 main.py 处理系统信号。
    server.install_signal_handlers = lambda: None

    watcher = asyncio.create_task(_wait_shutdown_signal(shutdown_event, server))
    logger.info(f"本地 HTTP 服务准备启动: http://{HTTP_HOST}:{HTTP_PORT}")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        logger.info("本地 HTTP 服务已关闭")
