"""
shadowrooms.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态跟踪：每个房间的连接计数与生命周期状态机。

::

    idle ──connect──▶ active{1} ──connect──▶ active{n+1}
                         │  ▲
                disconnect │  │ connect（取消计时器）
                (n == 1)   ▼  │
                         draining ──计时器到期且计数仍为 0──▶ archived（终态）

所有状态迁移都是同步的（不会挂起），在单事件循环下天然原子。
宽限计时器使用 ``loop.call_later``；每次迁移都会递增代数（generation），
过期的计时器回调发现代数不一致时直接忽略。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from shadowrooms.core.errors import ConflictError, ErrorReason
from shadowrooms.core.logging import get_logger

logger = get_logger(__name__)


class PresencePhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DRAINING = "draining"
    ARCHIVED = "archived"


@dataclass
class RoomPresence:
    """单个房间的在线状态（纯内存，重启后从 0 重建）。"""

    room_id: str
    count: int = 0
    phase: PresencePhase = PresencePhase.IDLE
    timer: asyncio.TimerHandle | None = None
    generation: int = 0


class PresenceTracker:
    """所有房间的在线计数与宽限计时器。

    Args:
        grace_period: 计数归零后到触发归档的宽限时间（秒）。
        on_expire: 宽限期结束、房间进入 ``archived`` 后的同步回调，参数为房间 ID。
    """

    def __init__(self, grace_period: float, on_expire: Callable[[str], None]) -> None:
        self.grace_period = grace_period
        self._on_expire = on_expire
        self._rooms: dict[str, RoomPresence] = {}

    def track(self, room_id: str) -> RoomPresence:
        """登记一个房间（已登记则原样返回）。"""
        state = self._rooms.get(room_id)
        if state is None:
            state = RoomPresence(room_id=room_id)
            self._rooms[room_id] = state
        return state

    def connect(self, room_id: str) -> int:
        """连接数 +1，返回新的计数。

        Raises:
            ConflictError: 房间已归档。
        """
        state = self.track(room_id)
        if state.phase is PresencePhase.ARCHIVED:
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
        if state.phase is PresencePhase.DRAINING:
            self._cancel_timer(state)
            logger.info("🔄 宽限期内重新连接，取消归档 | room=%s", room_id)
        state.count += 1
        state.phase = PresencePhase.ACTIVE
        state.generation += 1
        return state.count

    def disconnect(self, room_id: str) -> int:
        """连接数 -1，返回新的计数。归零时启动宽限计时器。"""
        state = self._rooms.get(room_id)
        if state is None or state.count == 0:
            logger.warning("忽略计数为 0 时的断开事件 | room=%s", room_id)
            return 0
        state.count -= 1
        state.generation += 1
        if state.count == 0:
            state.phase = PresencePhase.DRAINING
            loop = asyncio.get_running_loop()
            state.timer = loop.call_later(
                self.grace_period, self._fire, room_id, state.generation,
            )
            logger.info("⏳ 房间已空，%.1fs 后归档 | room=%s", self.grace_period, room_id)
        return state.count

    def _fire(self, room_id: str, generation: int) -> None:
        state = self._rooms.get(room_id)
        if state is None or state.generation != generation:
            return
        state.timer = None
        if state.phase is not PresencePhase.DRAINING or state.count != 0:
            return
        state.phase = PresencePhase.ARCHIVED
        state.generation += 1
        logger.info("🗄️ 宽限期结束，房间进入归档 | room=%s", room_id)
        self._on_expire(room_id)

    @staticmethod
    def _cancel_timer(state: RoomPresence) -> None:
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

    def count(self, room_id: str) -> int:
        state = self._rooms.get(room_id)
        return state.count if state else 0

    def phase(self, room_id: str) -> PresencePhase | None:
        state = self._rooms.get(room_id)
        return state.phase if state else None

    def forget(self, room_id: str) -> None:
        """移除房间的在线状态（房间被驱逐后调用）。"""
        state = self._rooms.pop(room_id, None)
        if state is not None:
            self._cancel_timer(state)

    def close(self) -> None:
        """取消所有未到期的计时器（进程关闭时调用）。"""
        for state in self._rooms.values():
            self._cancel_timer(state)
