"""
shadowrooms.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间持久化仓库：封装 rooms / room_sessions / messages / media /
room_events / room_archives 六张表的增查改操作。

所有 SQL 均使用规范方言，由 ``DatabaseAdapter`` 翻译到具体后端；
返回值一律映射为 ``shadowrooms.db.records`` 中的强类型记录。

配置了加密器时，消息内容以密封文本形式落库，读取时自动解密。
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from shadowrooms.core.crypto import TranscriptCipher
from shadowrooms.core.errors import IntegrityError, StorageError
from shadowrooms.core.logging import get_logger
from shadowrooms.db.adapter import DatabaseAdapter
from shadowrooms.db.records import (
    ArchiveRecord,
    MediaObject,
    Message,
    ParticipantSession,
    Room,
    to_datetime,
    utcnow,
)

logger = get_logger(__name__)

UNREADABLE: str = "[unreadable]"

_ROOM_COLUMNS = (
    "id, password_hash, magic_token, capacity, media_prefix, "
    "created_at, archived_at, archive_location"
)


class RoomRepository:
    """房间相关数据的持久化仓库。

    Attributes:
        db: 存储适配器。
        cipher: 可选的消息加密器（为 None 时明文落库）。
    """

    def __init__(self, db: DatabaseAdapter, cipher: TranscriptCipher | None = None) -> None:
        self.db = db
        self.cipher = cipher

    # ── rooms ─────────────────────────────────────────────────────────

    async def create_room(self, room: Room) -> Room:
        """插入房间记录。

        Raises:
            StorageError: 后端写入失败，或返回的主键与插入值不一致。
        """
        row = await self.db.fetchrow(
            "insert into rooms (id, password_hash, magic_token, capacity, media_prefix, created_at) "
            "values ($1, $2, $3, $4, $5, $6) returning id, magic_token",
            room.id, room.password_hash, room.magic_token, room.capacity,
            room.media_prefix, room.created_at,
        )
        if row is None or row["id"] != room.id or row["magic_token"] != room.magic_token:
            raise StorageError(message="房间记录写入失败")
        return room

    async def get_room(self, room_id: str) -> Room | None:
        row = await self.db.fetchrow(
            f"select {_ROOM_COLUMNS} from rooms where id = $1", room_id,
        )
        return Room.from_row(row) if row else None

    async def get_room_by_token(self, magic_token: str) -> Room | None:
        row = await self.db.fetchrow(
            f"select {_ROOM_COLUMNS} from rooms where magic_token = $1", magic_token,
        )
        return Room.from_row(row) if row else None

    async def mark_archived(
        self, room_id: str, archived_at: datetime, location: str | None,
    ) -> bool:
        """设置归档时间与位置。已归档的房间不会被覆盖（``archived_at`` 单调）。

        Returns:
            本次是否实际更新了记录。
        """
        changed = await self.db.execute(
            "update rooms set archived_at = $2, archive_location = $3 "
            "where id = $1 and archived_at is null",
            room_id, archived_at, location,
        )
        return changed > 0

    # ── room_sessions ─────────────────────────────────────────────────

    async def insert_session(self, session: ParticipantSession) -> None:
        await self.db.execute(
            "insert into room_sessions (id, room_id, display_name, address, user_agent, joined_at) "
            "values ($1, $2, $3, $4, $5, $6)",
            session.id, session.room_id, session.display_name,
            session.address, session.user_agent, session.joined_at,
        )

    async def mark_session_left(self, session_id: str, left_at: datetime) -> None:
        await self.db.execute(
            "update room_sessions set left_at = $2 where id = $1 and left_at is null",
            session_id, left_at,
        )

    async def list_sessions(self, room_id: str) -> list[ParticipantSession]:
        rows = await self.db.fetch(
            "select id, room_id, display_name, address, user_agent, joined_at, left_at "
            "from room_sessions where room_id = $1 order by joined_at asc",
            room_id,
        )
        return [ParticipantSession.from_row(row) for row in rows]

    # ── messages ──────────────────────────────────────────────────────

    def _encode_content(self, message: Message) -> str:
        raw = message.content if message.kind == "text" else json.dumps(message.content)
        return self.cipher.seal_text(raw) if self.cipher else raw

    def _decode_content(self, kind: str, stored: str) -> Any:
        raw = self.cipher.open_text(stored) if self.cipher else stored
        return raw if kind == "text" else json.loads(raw)

    async def append_message(self, message: Message) -> Message:
        """追加一条消息，返回带有存储序号 ``seq`` 的消息。"""
        row = await self.db.fetchrow(
            "insert into messages (id, room_id, kind, content, sender_id, sender_name, created_at) "
            "values ($1, $2, $3, $4, $5, $6, $7) returning seq",
            message.id, message.room_id, message.kind, self._encode_content(message),
            message.sender_id, message.sender_name, message.created_at,
        )
        if row is not None:
            message.seq = row["seq"]
        return message

    async def list_messages(self, room_id: str) -> list[Message]:
        """按追加顺序返回房间的全部消息。

        无法解密的消息以 ``[unreadable]`` 代替，并记录告警。
        """
        rows = await self.db.fetch(
            "select seq, id, room_id, kind, content, sender_id, sender_name, created_at "
            "from messages where room_id = $1 order by seq asc",
            room_id,
        )
        messages: list[Message] = []
        for row in rows:
            try:
                content = self._decode_content(row["kind"], row["content"])
            except (IntegrityError, ValueError) as e:
                logger.warning("消息无法解密 | room=%s | message=%s | %s", room_id, row["id"], e)
                content = UNREADABLE
            messages.append(
                Message(
                    id=row["id"],
                    room_id=row["room_id"],
                    kind=row["kind"],
                    content=content,
                    sender_id=row["sender_id"],
                    sender_name=row.get("sender_name"),
                    created_at=to_datetime(row["created_at"]),
                    seq=row["seq"],
                ),
            )
        return messages

    async def count_messages(self, room_id: str) -> int:
        row = await self.db.fetchrow(
            "select count(*) as total from messages where room_id = $1", room_id,
        )
        return int(row["total"]) if row else 0

    # ── media ─────────────────────────────────────────────────────────

    async def insert_media(self, media: MediaObject) -> MediaObject:
        await self.db.execute(
            "insert into media (room_id, storage_key, file_name, mime_type, size_bytes, uploaded_at) "
            "values ($1, $2, $3, $4, $5, $6)",
            media.room_id, media.storage_key, media.file_name,
            media.mime_type, media.size_bytes, media.uploaded_at,
        )
        return media

    async def get_media(self, room_id: str, storage_key: str) -> MediaObject | None:
        row = await self.db.fetchrow(
            "select room_id, storage_key, file_name, mime_type, size_bytes, uploaded_at "
            "from media where room_id = $1 and storage_key = $2",
            room_id, storage_key,
        )
        return MediaObject.from_row(row) if row else None

    async def list_media(self, room_id: str) -> list[MediaObject]:
        rows = await self.db.fetch(
            "select room_id, storage_key, file_name, mime_type, size_bytes, uploaded_at "
            "from media where room_id = $1 order by id asc",
            room_id,
        )
        return [MediaObject.from_row(row) for row in rows]

    # ── room_events（审计日志） ───────────────────────────────────────

    async def record_event(
        self,
        room_id: str,
        event_type: str,
        *,
        address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.db.execute(
            "insert into room_events (room_id, event_type, address, user_agent, metadata, created_at) "
            "values ($1, $2, $3, $4, $5, $6)",
            room_id, event_type, address, user_agent,
            json.dumps(metadata or {}), utcnow(),
        )

    async def list_events(self, room_id: str) -> list[dict[str, Any]]:
        rows = await self.db.fetch(
            "select event_type, address, user_agent, metadata, created_at "
            "from room_events where room_id = $1 order by id asc",
            room_id,
        )
        return [
            {
                "event_type": row["event_type"],
                "address": row.get("address"),
                "user_agent": row.get("user_agent"),
                "metadata": json.loads(row["metadata"]) if row.get("metadata") else {},
                "created_at": to_datetime(row["created_at"]),
            }
            for row in rows
        ]

    # ── room_archives ─────────────────────────────────────────────────

    async def insert_archive(self, record: ArchiveRecord) -> ArchiveRecord:
        row = await self.db.fetchrow(
            "insert into room_archives "
            "(room_id, location, encrypted, algorithm, message_count, participants, payload, created_at, closed_at) "
            "values ($1, $2, $3, $4, $5, $6, $7, $8, $9) returning id",
            record.room_id, record.location, record.encrypted, record.algorithm,
            record.message_count, json.dumps(record.participants), record.payload,
            record.created_at, record.closed_at,
        )
        if row is not None:
            record.id = row["id"]
        return record

    async def get_latest_archive(self, room_id: str) -> ArchiveRecord | None:
        row = await self.db.fetchrow(
            "select id, room_id, location, encrypted, algorithm, message_count, participants, "
            "payload, created_at, closed_at from room_archives where room_id = $1 "
            "order by id desc limit 1",
            room_id,
        )
        return ArchiveRecord.from_row(row) if row else None
