"""
shadowrooms.core.logging
~~~~~~~~~~~~~~~~~~~~~~~~

日志初始化。级别取自 ``settings.effective_log_level``，输出到 stdout。

每条记录都带上 ``request_id``：HTTP 请求由中间件写入，WebSocket 连接
在握手时写入，后台任务里为 ``-``。模块内统一用 ``get_logger(__name__)``。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from shadowrooms.core.config import settings

# 时间 | 级别 | 请求 ID | 模块名 | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(request_id)s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# 这些库在 INFO 级别下过于啰嗦
_QUIET_LOGGERS: tuple[str, ...] = ("aiosqlite", "asyncpg", "botocore", "boto3", "urllib3", "s3transfer")

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get()
        return True


def setup_logging(level: str | None = None) -> None:
    """配置 root logger，可重复调用（``force=True``）。"""
    level_name = (level or settings.effective_log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    request_filter = RequestIdFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(request_filter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
