from pillbox.logger import setup_logging, logger
from pillbox.config.settings import *
setup_logging(
    log_level=PILLBOX_LOG_LEVEL,
    log_file=PILLBOX_LOG_FILE,
    console_level=PILLBOX_CONSOLE_LOG_LEVEL,
)

import asyncio
import signal

from pillbox.core.scheduler import Scheduler
from pillbox.core.sms_client import SmsClient
from pillbox.events import bus
from pillbox.notify.emitter import NotificationEmitter
from pillbox.relay.http_server import main_loop as http_main
from pillbox.storage.reminder import ReminderStore
from pillbox.ui.popup import ReminderPopup
from pillbox.ui.toast import ToastSink
import pillbox.storage.db_config as db_config

shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await db_config.init_db(PILLBOX_DB_PATH)

    store = ReminderStore()
    await store.load()

    emitter = NotificationEmitter(bus)
    emitter.request_permission()
    sms = SmsClient(bus=bus)

    toasts = ToastSink(bus)
    scheduler = Scheduler(store, emitter, sms, bus=bus)
    popup = ReminderPopup(scheduler, bus=bus, sms=sms)

    try:
        await scheduler.start()

        tasks = [shutdown_event.wait()]
        if ENABLE_HTTP_SERVER:
            tasks.append(http_main(shutdown_event, scheduler=scheduler, popup=popup, toasts=toasts))
        else:
            logger.warning("本地 HTTP 服务已禁用, SMS 中继需要指向外部地址")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 Pillbox...")
        await scheduler.stop()

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        logger.info("Pillbox 已关闭")


def run() -> None:
    logger.info("启动 Pillbox...")
    asyncio.run(main())


if __name__ == "__main__":
    run()
