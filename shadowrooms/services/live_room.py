"""
shadowrooms.services.live_room
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

活跃房间的内存状态：由 ``RoomRegistry`` 独占持有。

每个 ``LiveRoom`` 拥有独立的连接广播器、内存转录缓冲与一把房间锁；
所有包含 I/O 的变更（发消息、连接/断开广播、归档）都在锁内串行执行，
保证同一房间内「落库顺序 = 广播顺序 = 转录顺序」。
"""
from __future__ import annotations

import asyncio

from shadowrooms.db.records import Message, ParticipantSession, Room
from shadowrooms.schemas.rooms import RoomInfoData
from shadowrooms.services.room_broadcaster import RoomBroadcaster


class LiveRoom:
    """一个活跃房间。

    Attributes:
        record: 房间持久化记录。
        broadcaster: 本房间的连接广播器。
        transcript: 按追加顺序排列的内存转录（存储不可用时作为归档后备）。
        participants: 当前在线的会话（会话 ID → 会话）。
        sessions: 本房间出现过的全部会话，用于归档元数据。
        lock: 房间锁。
    """

    def __init__(self, record: Room) -> None:
        self.record = record
        self.broadcaster = RoomBroadcaster()
        self.transcript: list[Message] = []
        self.participants: dict[str, ParticipantSession] = {}
        self.sessions: list[ParticipantSession] = []
        self.lock = asyncio.Lock()

    @property
    def room_id(self) -> str:
        return self.record.id

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return self.broadcaster.online_count

    def info(self, phase: str) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            capacity=self.record.capacity,
            online_count=len(self.participants),
            phase=phase,
            created_at=self.record.created_at.isoformat(),
        )
