"""
shadowrooms.services.archival
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

归档引擎：房间被判定为废弃后，把转录持久、保密地保存下来。

流程（每个房间仅执行一次，只由 ``draining → archived`` 迁移触发）:
  1. 从存储读取转录（按 ``seq`` 排序）；存储失败时回退到内存缓冲
  2. 序列化为 NDJSON，每条消息一行
  3. 有密钥时以 AES-256-GCM 加密为信封；无密钥时明文归档并告警
  4. 通过对象存储写入归档文件，并写入一条 ``ArchiveRecord``
  5. 标记房间 ``archived_at`` / ``archive_location``（前面失败也会尝试）

单步失败只记录日志，不会中断后续步骤；结果中列出失败的步骤。
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from shadowrooms.core.crypto import ALGORITHM, TranscriptCipher
from shadowrooms.core.errors import RoomError
from shadowrooms.core.logging import get_logger
from shadowrooms.db.records import ArchiveRecord, Message, ParticipantSession, Room, utcnow
from shadowrooms.db.room_repository import RoomRepository
from shadowrooms.storage.blob_store import BlobStore

logger = get_logger(__name__)

PLAINTEXT_ALGORITHM: str = "none"


@dataclass
class ArchiveResult:
    """一次归档的结果。"""

    room_id: str
    location: str | None
    encrypted: bool
    message_count: int
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


def serialize_transcript(messages: list[Message]) -> bytes:
    """NDJSON：每条消息一个 JSON 对象，一行一个。"""
    lines = [json.dumps(m.to_transcript(), ensure_ascii=False) for m in messages]
    return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""


def parse_transcript(data: bytes) -> list[dict[str, Any]]:
    return [json.loads(line) for line in data.decode("utf-8").splitlines() if line.strip()]


class ArchivalEngine:
    """归档引擎。

    Args:
        repo: 房间仓库。
        blobs: 对象存储（归档文件写入 ``archives/`` 前缀下）。
        cipher: 加密器；为 None 时明文归档。
    """

    def __init__(
        self,
        repo: RoomRepository,
        blobs: BlobStore,
        cipher: TranscriptCipher | None = None,
    ) -> None:
        self.repo = repo
        self.blobs = blobs
        self.cipher = cipher

    @staticmethod
    def archive_key(room_id: str, closed_at_ms: int, encrypted: bool) -> str:
        suffix = ".jsonl.enc" if encrypted else ".jsonl"
        return f"archives/{room_id}/transcript_{closed_at_ms}{suffix}"

    async def _load_transcript(
        self, room: Room, live_transcript: list[Message], failed: list[str],
    ) -> list[Message]:
        try:
            return await self.repo.list_messages(room.id)
        except RoomError as e:
            logger.error("读取转录失败，回退到内存缓冲 | room=%s | %s", room.id, e)
            failed.append("load")
            return list(live_transcript)

    async def _load_participants(
        self, room: Room, sessions: list[ParticipantSession],
    ) -> list[dict[str, Any]]:
        try:
            stored = await self.repo.list_sessions(room.id)
        except RoomError as e:
            logger.warning("读取会话记录失败，使用内存记录 | room=%s | %s", room.id, e)
            stored = []
        return [s.to_audit() for s in (stored or sessions)]

    async def archive(
        self,
        room: Room,
        live_transcript: list[Message] | None = None,
        sessions: list[ParticipantSession] | None = None,
    ) -> ArchiveResult:
        """归档一个房间。永不抛出业务异常。"""
        failed: list[str] = []
        closed_at = utcnow()
        messages = await self._load_transcript(room, live_transcript or [], failed)
        participants = await self._load_participants(room, sessions or [])

        plaintext = serialize_transcript(messages)
        if self.cipher is not None:
            payload = self.cipher.encrypt_to_text(plaintext)
            encrypted, algorithm = True, ALGORITHM
        else:
            logger.warning("⚠️ 未配置 ENCRYPTION_KEY，转录将以明文归档 | room=%s", room.id)
            payload = plaintext.decode("utf-8")
            encrypted, algorithm = False, PLAINTEXT_ALGORITHM

        location: str | None = self.archive_key(
            room.id, int(closed_at.timestamp() * 1000), encrypted,
        )
        mime = "application/json" if encrypted else "application/x-ndjson"
        try:
            await self.blobs.put_object(location, payload.encode("utf-8"), mime)
        except RoomError as e:
            logger.error("归档文件写入失败 | room=%s | %s", room.id, e)
            failed.append("blob")
            location = None

        try:
            await self.repo.insert_archive(
                ArchiveRecord(
                    room_id=room.id,
                    location=location,
                    encrypted=encrypted,
                    algorithm=algorithm,
                    message_count=len(messages),
                    payload=payload,
                    created_at=room.created_at,
                    closed_at=closed_at,
                    participants=participants,
                ),
            )
        except RoomError as e:
            logger.error("归档记录写入失败 | room=%s | %s", room.id, e)
            failed.append("record")

        try:
            await self.repo.mark_archived(room.id, closed_at, location)
        except RoomError as e:
            logger.error("标记房间归档失败 | room=%s | %s", room.id, e)
            failed.append("mark")

        room.archived_at = room.archived_at or closed_at
        room.archive_location = room.archive_location or location

        logger.info(
            "🗄️ 房间已归档 | room=%s | messages=%d | encrypted=%s | location=%s | failed=%s",
            room.id, len(messages), encrypted, location, failed or "-",
        )
        return ArchiveResult(
            room_id=room.id,
            location=location,
            encrypted=encrypted,
            message_count=len(messages),
            failed_steps=failed,
        )

    async def read_transcript(self, location: str) -> list[dict[str, Any]]:
        """读回一个归档文件并（必要时）解密。

        Raises:
            NotFoundError: 归档文件不存在。
            IntegrityError: 认证标签不匹配或信封格式错误。
        """
        data = await self.blobs.get_object(location)
        if location.endswith(".enc"):
            if self.cipher is None:
                raise RuntimeError("读取加密归档需要配置 ENCRYPTION_KEY")
            data = self.cipher.decrypt_text(data)
        return parse_transcript(data)

