"""
shadowrooms.db.records
~~~~~~~~~~~~~~~~~~~~~~

强类型的领域记录。存储适配器负责把各后端返回的行映射为这些对象，
上层代码不再接触松散的行字典。
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

MessageKind = Literal["text", "media"]


def utcnow() -> datetime:
    """带时区的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> datetime | None:
    """把后端返回的时间值（``datetime`` 或 ISO 字符串）统一为带时区的 ``datetime``。"""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_value(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


@dataclass
class Room:
    """房间。``archived_at`` 一旦设置就不会再被清空。"""

    id: str
    password_hash: str
    magic_token: str
    capacity: int
    created_at: datetime
    media_prefix: str
    archived_at: datetime | None = None
    archive_location: str | None = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Room:
        return cls(
            id=row["id"],
            password_hash=row["password_hash"],
            magic_token=row["magic_token"],
            capacity=int(row["capacity"]),
            created_at=to_datetime(row["created_at"]),
            media_prefix=row["media_prefix"],
            archived_at=to_datetime(row.get("archived_at")),
            archive_location=row.get("archive_location"),
        )


@dataclass
class ParticipantSession:
    """一次 WebSocket 连接对应的参与者会话。"""

    id: str
    room_id: str
    display_name: str | None
    joined_at: datetime
    address: str | None = None
    user_agent: str | None = None
    left_at: datetime | None = None

    @property
    def connected(self) -> bool:
        return self.left_at is None

    def to_audit(self) -> dict[str, Any]:
        """归档元数据中的参与者记录。"""
        return {
            "sessionId": self.id,
            "displayName": self.display_name,
            "address": self.address,
            "userAgent": self.user_agent,
            "joinedAt": self.joined_at.isoformat(),
            "leftAt": self.left_at.isoformat() if self.left_at else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ParticipantSession:
        return cls(
            id=row["id"],
            room_id=row["room_id"],
            display_name=row.get("display_name"),
            joined_at=to_datetime(row["joined_at"]),
            address=row.get("address"),
            user_agent=row.get("user_agent"),
            left_at=to_datetime(row.get("left_at")),
        )


@dataclass
class Message:
    """一条消息。顺序以成功追加的顺序（``seq``）为准，而不是发送方时间。"""

    id: str
    room_id: str
    kind: MessageKind
    content: Any
    sender_id: str
    sender_name: str | None
    created_at: datetime
    seq: int | None = None

    @property
    def text(self) -> str | None:
        return self.content if self.kind == "text" else None

    def to_transcript(self) -> dict[str, Any]:
        """归档转录中的一行。"""
        return {
            "id": self.id,
            "kind": self.kind,
            "sender": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class MediaObject:
    """已上传的媒体文件，由对象存储持有。"""

    room_id: str
    storage_key: str
    file_name: str
    mime_type: str
    size_bytes: int
    uploaded_at: datetime

    def descriptor(self) -> dict[str, Any]:
        """媒体消息的结构化内容。"""
        return {
            "storageKey": self.storage_key,
            "fileName": self.file_name,
            "mimeType": self.mime_type,
            "sizeBytes": self.size_bytes,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MediaObject:
        return cls(
            room_id=row["room_id"],
            storage_key=row["storage_key"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            size_bytes=int(row["size_bytes"]),
            uploaded_at=to_datetime(row["uploaded_at"]),
        )


@dataclass
class ArchiveRecord:
    """一次归档的元数据（以及归档产物本身）。"""

    room_id: str
    location: str | None
    encrypted: bool
    algorithm: str
    message_count: int
    payload: str
    created_at: datetime
    closed_at: datetime
    participants: list[dict[str, Any]] = field(default_factory=list)
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ArchiveRecord:
        return cls(
            id=row.get("id"),
            room_id=row["room_id"],
            location=row.get("location"),
            encrypted=bool(row["encrypted"]),
            algorithm=row["algorithm"],
            message_count=int(row["message_count"]),
            payload=row["payload"],
            created_at=to_datetime(row["created_at"]),
            closed_at=to_datetime(row["closed_at"]),
            participants=_json_value(row.get("participants"), []),
        )
