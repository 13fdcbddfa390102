import storage.db_config as db_config
from capabilities.base import KeyValueStorage
from logger import logger

__all__ = ["SqliteKeyValueStorage"]


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


class SqliteKeyValueStorage(KeyValueStorage):
    """持久化键值存储, 对应浏览器里的 localStorage"""

    async def get(self, key: str) -> str | None:
        _ensure_conn()
        async with db_config.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        _ensure_conn()
        await db_config.conn.execute(
            "INSERT INTO kv_store (key, value, updated_at_utc) VALUES (?, ?, CURRENT_TIMESTAMP) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at_utc = CURRENT_TIMESTAMP",
            (key, value),
        )
        await db_config.conn.commit()
        logger.trace(f"写入键值: key={key}")

    async def delete(self, key: str) -> None:
        _ensure_conn()
        await db_config.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        await db_config.conn.commit()
