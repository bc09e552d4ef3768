"""
shadowrooms.db
~~~~~~~~~~~~~~

关系型存储的连接管理。

根据 ``DATABASE_BACKEND`` 在启动时选择一次后端，由 ``lifespan`` 持有适配器实例：
启动时调用 ``connect_database()``，关闭时调用 ``adapter.close()``。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from shadowrooms.core.config import Settings
from shadowrooms.core.logging import get_logger
from shadowrooms.db.adapter import DatabaseAdapter, PostgresAdapter, SQLiteAdapter
from shadowrooms.db.schema import SCHEMA

logger = get_logger(__name__)


def _mask_uri(uri: str) -> str:
    """将连接串中的密码替换为 ``***``，防止日志泄漏凭证。"""
    parsed = urlparse(uri)
    if parsed.password:
        masked = parsed._replace(
            netloc=f"{parsed.username}:***@{parsed.hostname}"
            + (f":{parsed.port}" if parsed.port else ""),
        )
        return urlunparse(masked)
    return uri


def create_database_adapter(cfg: Settings) -> DatabaseAdapter:
    """按配置构造存储适配器（尚未连接）。"""
    if cfg.DATABASE_BACKEND == "postgres":
        logger.info("使用 PostgreSQL 存储 | uri=%s", _mask_uri(cfg.DATABASE_URL))
        return PostgresAdapter(cfg.DATABASE_URL, pool_size=cfg.DATABASE_POOL_SIZE)
    logger.info("使用 SQLite 存储 | path=%s", cfg.SQLITE_PATH)
    return SQLiteAdapter(cfg.SQLITE_PATH)


async def connect_database(cfg: Settings) -> DatabaseAdapter:
    """建立连接并确保表结构存在。应在 lifespan startup 中调用。"""
    adapter = create_database_adapter(cfg)
    await adapter.connect()
    await adapter.execute_script(SCHEMA)
    logger.info("数据库表结构已就绪 | dialect=%s", adapter.dialect)
    return adapter


__all__ = [
    "DatabaseAdapter",
    "PostgresAdapter",
    "SQLiteAdapter",
    "connect_database",
    "create_database_adapter",
]
