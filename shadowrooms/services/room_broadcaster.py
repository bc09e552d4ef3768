"""
shadowrooms.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接广播器：维护某个房间的在线连接与广播能力。
"""
from __future__ import annotations

import asyncio
from typing import Any, Protocol

from shadowrooms.core.logging import get_logger

logger = get_logger(__name__)


class Connection(Protocol):
    """广播器只依赖 ``send_json``，测试中可用任意假连接替代 ``WebSocket``。"""

    async def send_json(self, data: Any) -> None: ...


class RoomBroadcaster:
    """WebSocket 连接广播器。

    每个 ``LiveRoom`` 持有一个独立的 ``RoomBroadcaster`` 实例，
    连接以会话 ID 为键。

    Attributes:
        connections: 会话 ID → 连接。
    """

    def __init__(self) -> None:
        self.connections: dict[str, Connection] = {}

    def add(self, session_id: str, connection: Connection) -> None:
        """登记一个已接受的连接。"""
        self.connections[session_id] = connection

    def remove(self, session_id: str) -> None:
        self.connections.pop(session_id, None)

    async def broadcast(self, event: dict[str, Any]) -> None:
        """向本房间所有在线连接广播事件，发送失败的连接被移除。"""
        targets = list(self.connections.items())
        results = await asyncio.gather(
            *(conn.send_json(event) for _, conn in targets),
            return_exceptions=True,
        )
        for (session_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接 | session=%s", session_id)
                self.connections.pop(session_id, None)

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.connections)
