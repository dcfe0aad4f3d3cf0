"""本地键值存储

单表 kv，用法与浏览器的 localStorage 一致: 每个键一条记录，值为字符串。
"""

import pillbox.storage.db_config as db_config
from pillbox.logger import logger


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


async def get_item(key: str) -> str | None:
    _ensure_conn()
    async with db_config.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
        row = await cursor.fetchone()
        return row[0] if row else None


async def set_item(key: str, value: str) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "INSERT INTO kv (key, value, updated_at_utc) VALUES (?, ?, CURRENT_TIMESTAMP) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at_utc = excluded.updated_at_utc",
        (key, value),
    )
    await db_config.conn.commit()
    logger.trace(f"写入键值: key={key}, size={len(value)}")


__all__ = ["get_item", "set_item"]
