"""
shadowrooms.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~~~

API 与 WebSocket 的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from shadowrooms.core.config import settings

# ── HTTP 限流 ─────────────────────────────────────────────────────────
# 按客户端 IP 计数；建房与入房（密码尝试）两个接口挂了限额
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)


# ── WebSocket 限流 ────────────────────────────────────────────────────
class WebSocketRateLimiter:
    """按会话记录最近一次消息时间，两条消息间隔不足 ``interval_seconds`` 即拒绝。

    ``interval_seconds`` 为 0 时不限流。
    """

    def __init__(self, interval_seconds: float = 0.3) -> None:
        self.interval_seconds = interval_seconds
        self._last_seen: dict[str, float] = {}

    def is_allowed(self, session_id: str) -> bool:
        """放行时顺带记下本次时间；被拒绝的消息不刷新计时。"""
        if self.interval_seconds <= 0:
            return True
        now = time.monotonic()
        previous = self._last_seen.get(session_id)
        if previous is not None and now - previous < self.interval_seconds:
            return False
        self._last_seen[session_id] = now
        return True

    def forget(self, session_id: str) -> None:
        self._last_seen.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._last_seen)
