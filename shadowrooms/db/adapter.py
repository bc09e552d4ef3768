"""
shadowrooms.db.adapter
~~~~~~~~~~~~~~~~~~~~~~

关系型存储适配器：统一的参数化查询接口，屏蔽后端差异。

上层只写一种规范方言（PostgreSQL 风格）:
  - 占位符 ``$1, $2, ...``
  - ``INSERT ... RETURNING col, ...``
  - ``now()`` / ``timestamptz`` / ``bigserial`` / ``boolean`` / ``::type`` 类型转换

``PostgresAdapter`` 原样执行；``SQLiteAdapter`` 负责翻译成 SQLite 方言，
并在不支持 ``RETURNING`` 的前提下，根据插入时使用的参数推导出返回字段。

后端在启动时选择一次，运行期间不会切换。
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Sequence

import aiosqlite
import asyncpg

from shadowrooms.core.errors import StorageError
from shadowrooms.core.logging import get_logger

logger = get_logger(__name__)

Row = dict[str, Any]


class DatabaseAdapter(ABC):
    """存储适配器抽象基类。

    Attributes:
        dialect: 后端方言名称。
        supports_returning: 后端是否原生支持 ``RETURNING``。
    """

    dialect: str = ""
    supports_returning: bool = True

    @abstractmethod
    async def connect(self) -> None:
        """建立连接（池）。"""

    @abstractmethod
    async def close(self) -> None:
        """释放连接（池）。"""

    @abstractmethod
    async def fetch(self, sql: str, *params: Any) -> list[Row]:
        """执行查询（含 ``INSERT ... RETURNING``），返回所有行。"""

    @abstractmethod
    async def execute(self, sql: str, *params: Any) -> int:
        """执行写操作，返回受影响行数。"""

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """执行多条无参数语句（建表等）。"""

    async def fetchrow(self, sql: str, *params: Any) -> Row | None:
        """执行查询并返回第一行（没有结果时返回 ``None``）。"""
        rows = await self.fetch(sql, *params)
        return rows[0] if rows else None


# ---------------------------------------------------------------------------
# SQLite 方言翻译
# ---------------------------------------------------------------------------

_PLACEHOLDER_RE = re.compile(r"\$(\d+)")
_CAST_RE = re.compile(r"::\s*[A-Za-z_][A-Za-z0-9_]*(\[\])?")
_RETURNING_RE = re.compile(r"\s+returning\s+(?P<cols>[^;]+?)\s*;?\s*$", re.IGNORECASE | re.DOTALL)
_INSERT_HEAD_RE = re.compile(r"^\s*insert\s+into\s+(?P<table>\w+)\s*\(", re.IGNORECASE)

_TYPE_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bbigserial\s+primary\s+key\b", re.IGNORECASE), "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (re.compile(r"\bserial\s+primary\s+key\b", re.IGNORECASE), "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (re.compile(r"\btimestamptz\b", re.IGNORECASE), "TEXT"),
    (re.compile(r"\bnow\(\)", re.IGNORECASE), "CURRENT_TIMESTAMP"),
    (re.compile(r"\bboolean\b", re.IGNORECASE), "INTEGER"),
    (re.compile(r"\bjsonb\b", re.IGNORECASE), "TEXT"),
)


def _split_top_level(text: str) -> list[str]:
    """按最外层逗号切分（忽略括号内的逗号）。"""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _read_group(sql: str, start: int) -> tuple[str, int]:
    """从 ``sql[start]``（必须是左括号）读出配对括号内的内容，返回 (内容, 结束位置)。"""
    depth = 0
    for pos in range(start, len(sql)):
        if sql[pos] == "(":
            depth += 1
        elif sql[pos] == ")":
            depth -= 1
            if depth == 0:
                return sql[start + 1:pos], pos + 1
    raise ValueError("括号不匹配")


def parse_insert(sql: str) -> tuple[list[str], list[str]] | None:
    """解析 ``INSERT INTO t (cols) VALUES (vals)``，返回 (列名列表, 值表达式列表)。"""
    head = _INSERT_HEAD_RE.match(sql)
    if head is None:
        return None
    cols_text, pos = _read_group(sql, head.end() - 1)
    values_match = re.compile(r"\s*values\s*", re.IGNORECASE).match(sql, pos)
    if values_match is None:
        return None
    vals_text, _ = _read_group(sql, values_match.end())
    columns = [c.strip().strip('"').lower() for c in _split_top_level(cols_text)]
    values = _split_top_level(vals_text)
    if len(columns) != len(values):
        return None
    return columns, values


@lru_cache(maxsize=256)
def translate_sql(sql: str) -> tuple[str, tuple[int, ...]]:
    """把规范方言翻译为 SQLite 方言。

    Returns:
        (翻译后的 SQL, 每个 ``?`` 对应的原参数下标)。
        ``$n`` 可能重复或乱序出现，SQLite 的 ``?`` 只按位置绑定，因此需要重排参数。
    """
    order: list[int] = []

    def _placeholder(match: re.Match[str]) -> str:
        order.append(int(match.group(1)) - 1)
        return "?"

    translated = _CAST_RE.sub("", sql)
    for pattern, replacement in _TYPE_REWRITES:
        translated = pattern.sub(replacement, translated)
    translated = _PLACEHOLDER_RE.sub(_placeholder, translated)
    return translated, tuple(order)


def split_returning(sql: str) -> tuple[str, list[str]]:
    """拆出 ``RETURNING`` 子句，返回 (去掉子句后的 SQL, 返回列名列表)。"""
    match = _RETURNING_RE.search(sql)
    if match is None:
        return sql, []
    columns = [c.strip().lower() for c in match.group("cols").split(",") if c.strip()]
    return sql[:match.start()], columns


def derive_returning(
    insert_sql: str,
    columns: Sequence[str],
    params: Sequence[Any],
    lastrowid: int | None,
) -> Row:
    """根据插入时使用的参数推导 ``RETURNING`` 的结果行。

    列值来自对应位置的 ``$n`` 参数；不在插入列中的列（自增主键）取 ``lastrowid``。
    """
    parsed = parse_insert(insert_sql)
    inserted: dict[str, str] = dict(zip(*parsed)) if parsed else {}
    row: Row = {}
    for column in columns:
        expr = inserted.get(column)
        placeholder = _PLACEHOLDER_RE.fullmatch(_CAST_RE.sub("", expr).strip()) if expr else None
        if placeholder is not None:
            row[column] = params[int(placeholder.group(1)) - 1]
        else:
            row[column] = lastrowid
    return row


def _bind(value: Any) -> Any:
    """SQLite 没有原生时间/布尔类型：时间存 ISO-8601 字符串，布尔存整数。"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteAdapter(DatabaseAdapter):
    """基于 ``aiosqlite`` 的 SQLite 后端（自动提交模式）。"""

    dialect = "sqlite"
    supports_returning = False

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA foreign_keys=ON;")
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(message=f"SQLite 打开失败: {e}") from e
        logger.info("SQLite 已连接 | path=%s", self.path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("SQLite 连接已关闭")

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError(message="SQLite 尚未初始化，请先调用 connect()")
        return self._conn

    def _prepare(self, sql: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
        translated, order = translate_sql(sql)
        return translated, [_bind(params[i]) for i in order]

    async def fetch(self, sql: str, *params: Any) -> list[Row]:
        body, returning = split_returning(sql)
        try:
            if returning:
                # SQLite 适配层不依赖原生 RETURNING：执行插入后从参数推导返回行
                translated, bound = self._prepare(body, params)
                cursor = await self.conn.execute(translated, bound)
                lastrowid, changed = cursor.lastrowid, cursor.rowcount
                await cursor.close()
                if changed == 0:
                    return []
                return [derive_returning(body, returning, params, lastrowid)]

            translated, bound = self._prepare(sql, params)
            cursor = await self.conn.execute(translated, bound)
            rows = await cursor.fetchall()
            await cursor.close()
            return [dict(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("SQLite 查询失败: %s", e)
            raise StorageError(message=f"SQLite 查询失败: {e}") from e

    async def execute(self, sql: str, *params: Any) -> int:
        translated, bound = self._prepare(sql, params)
        try:
            cursor = await self.conn.execute(translated, bound)
            changed = cursor.rowcount
            await cursor.close()
            return changed
        except aiosqlite.Error as e:
            logger.error("SQLite 写入失败: %s", e)
            raise StorageError(message=f"SQLite 写入失败: {e}") from e

    async def execute_script(self, script: str) -> None:
        translated, _ = translate_sql(script)
        try:
            await self.conn.executescript(translated)
        except aiosqlite.Error as e:
            raise StorageError(message=f"SQLite 建表失败: {e}") from e


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _rowcount(status: str) -> int:
    """从 asyncpg 的命令状态（如 ``UPDATE 1``）中解析受影响行数。"""
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class PostgresAdapter(DatabaseAdapter):
    """基于 ``asyncpg`` 连接池的 PostgreSQL 后端，直接执行规范方言。"""

    dialect = "postgres"
    supports_returning = True

    def __init__(self, dsn: str, pool_size: int = 5) -> None:
        self.dsn = dsn
        self.pool_size = pool_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=1, max_size=self.pool_size,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StorageError(message=f"PostgreSQL 连接失败: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL 连接池已关闭")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageError(message="PostgreSQL 尚未初始化，请先调用 connect()")
        return self._pool

    async def fetch(self, sql: str, *params: Any) -> list[Row]:
        try:
            async with self.pool.acquire() as conn:
                records = await conn.fetch(sql, *params)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("PostgreSQL 查询失败: %s", e)
            raise StorageError(message=f"PostgreSQL 查询失败: {e}") from e
        return [dict(record) for record in records]

    async def execute(self, sql: str, *params: Any) -> int:
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute(sql, *params)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("PostgreSQL 写入失败: %s", e)
            raise StorageError(message=f"PostgreSQL 写入失败: {e}") from e
        return _rowcount(status)

    async def execute_script(self, script: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(script)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StorageError(message=f"PostgreSQL 建表失败: {e}") from e
