"""
shadowrooms.services.registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间注册表：进程内「房间 ID → 活跃房间」的权威映射，组合存储、对象存储、
在线状态与归档引擎，管理房间从创建到归档驱逐的完整生命周期。

在 FastAPI lifespan 中构造并挂载于 ``app.state.registry``，不存在模块级单例。

并发约定（单事件循环）:
  - 在线计数的迁移是同步的，不会被其他协程打断
  - 包含 I/O 的变更在房间锁内执行：落库 → 追加内存转录 → 广播
  - 宽限计时器到期后房间立即进入 ``archived``，归档作为受跟踪的任务运行，
    并在开始读取转录前获取房间锁

在线状态仅存在于本进程，多进程部署不受支持。
"""
from __future__ import annotations

import asyncio
import secrets
import uuid
from datetime import datetime
from typing import Any
from urllib.parse import quote

from shadowrooms.core.config import Settings, settings as default_settings
from shadowrooms.core.errors import (
    AuthError,
    ConflictError,
    ErrorReason,
    NotFoundError,
    RoomError,
    ValidationError,
)
from shadowrooms.core.logging import get_logger
from shadowrooms.core.security import PasswordHasher, SessionClaims
from shadowrooms.db.records import MediaObject, Message, ParticipantSession, Room, utcnow
from shadowrooms.db.room_repository import RoomRepository
from shadowrooms.schemas.events import (
    PresenceEvent,
    ServerMediaEvent,
    ServerMessageEvent,
    dump_event,
)
from shadowrooms.schemas.rooms import RoomInfoData
from shadowrooms.services.archival import ArchivalEngine, ArchiveResult
from shadowrooms.services.live_room import LiveRoom
from shadowrooms.services.presence import PresencePhase, PresenceTracker
from shadowrooms.services.room_broadcaster import Connection
from shadowrooms.storage.blob_store import BlobReference, BlobStore, room_key

logger = get_logger(__name__)


class RoomRegistry:
    """房间注册表。

    - ``create_room(password, capacity)``   → 建房（校验 → 哈希 → 落库 → 登记）
    - ``resolve_magic_token(token)``        → 魔法链接令牌 → 房间 ID
    - ``connect()`` / ``disconnect()``      → 连接进出，驱动在线状态机
    - ``post_message()`` / ``post_media()`` → 发送文本 / 媒体消息
    - ``store_media()``                     → 上传媒体文件
    - ``close()``                           → 进程关闭时收尾

    Attributes:
        repo: 房间仓库。
        blobs: 对象存储。
        archiver: 归档引擎。
        presence: 在线状态跟踪器。
    """

    def __init__(
        self,
        repo: RoomRepository,
        blobs: BlobStore,
        archiver: ArchivalEngine,
        hasher: PasswordHasher,
        cfg: Settings = default_settings,
        *,
        grace_period: float | None = None,
    ) -> None:
        self.repo = repo
        self.blobs = blobs
        self.archiver = archiver
        self.hasher = hasher
        self.cfg = cfg
        self.presence = PresenceTracker(
            grace_period=cfg.GRACE_PERIOD_SECONDS if grace_period is None else grace_period,
            on_expire=self._on_presence_expired,
        )
        self._rooms: dict[str, LiveRoom] = {}
        # 已进入归档的房间 ID → 归档时间，即使存储未能记录 archived_at 也保持不可加入
        self._tombstones: dict[str, datetime] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.last_results: dict[str, ArchiveResult] = {}

    # ── 建房与查询 ────────────────────────────────────────────────────

    def _validate_new_room(self, password: Any, capacity: Any) -> int:
        if capacity is None:
            capacity = self.cfg.CAPACITY_DEFAULT
        if (
            isinstance(capacity, bool)
            or not isinstance(capacity, int)
            or not self.cfg.CAPACITY_MIN <= capacity <= self.cfg.CAPACITY_MAX
        ):
            raise ValidationError(
                ErrorReason.INVALID_CAPACITY,
                f"容量必须在 {self.cfg.CAPACITY_MIN}~{self.cfg.CAPACITY_MAX} 之间",
            )
        if (
            not isinstance(password, str)
            or not self.cfg.PASSWORD_MIN_LENGTH <= len(password) <= self.cfg.PASSWORD_MAX_LENGTH
        ):
            raise ValidationError(
                ErrorReason.INVALID_PASSWORD_LENGTH,
                f"密码长度必须在 {self.cfg.PASSWORD_MIN_LENGTH}~{self.cfg.PASSWORD_MAX_LENGTH} 之间",
            )
        return capacity

    async def create_room(
        self,
        password: str,
        capacity: int | None = None,
        *,
        address: str | None = None,
        user_agent: str | None = None,
    ) -> Room:
        """创建房间。

        Raises:
            ValidationError: 容量或密码不合法（发生在任何副作用之前）。
            StorageError: 落库失败，此时房间不会被登记。
        """
        capacity = self._validate_new_room(password, capacity)
        room_id = uuid.uuid4().hex
        room = Room(
            id=room_id,
            password_hash=await self.hasher.hash(password),
            magic_token=secrets.token_urlsafe(24),
            capacity=capacity,
            created_at=utcnow(),
            media_prefix=f"rooms/{room_id}",
        )
        await self.repo.create_room(room)

        self._rooms[room_id] = LiveRoom(room)
        self.presence.track(room_id)
        await self.record_event(
            room_id, "room_created",
            address=address, user_agent=user_agent, metadata={"capacity": capacity},
        )
        logger.info("🏠 房间已创建 | room=%s | capacity=%d", room_id, capacity)
        return room

    async def resolve_magic_token(self, token: str) -> str:
        """魔法链接令牌 → 房间 ID。

        Raises:
            NotFoundError: 未知令牌。
        """
        if not token:
            raise NotFoundError(ErrorReason.ROOM_NOT_FOUND, "链接无效")
        for live in self._rooms.values():
            if secrets.compare_digest(live.record.magic_token.encode(), token.encode()):
                return live.room_id
        room = await self.repo.get_room_by_token(token)
        if room is None:
            raise NotFoundError(ErrorReason.ROOM_NOT_FOUND, "链接无效")
        return room.id

    async def get_room(self, room_id: str) -> Room:
        """返回房间记录（先查内存，再查存储）。

        Raises:
            NotFoundError: 房间不存在。
        """
        live = self._rooms.get(room_id)
        room = live.record if live else await self.repo.get_room(room_id)
        if room is None:
            raise NotFoundError(ErrorReason.ROOM_NOT_FOUND, "房间不存在")
        tombstone = self._tombstones.get(room_id)
        if tombstone is not None and room.archived_at is None:
            room.archived_at = tombstone
        return room

    def is_archived(self, room: Room) -> bool:
        return (
            room.is_archived
            or room.id in self._tombstones
            or self.presence.phase(room.id) is PresencePhase.ARCHIVED
        )

    async def ensure_joinable(self, room_id: str) -> Room:
        """检查房间可加入：存在、未归档、未满。

        Raises:
            NotFoundError: 房间不存在。
            ConflictError: ``ROOM_ARCHIVED`` 或 ``ROOM_FULL``。
        """
        room = await self.get_room(room_id)
        if self.is_archived(room):
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
        if self.presence.count(room_id) >= room.capacity:
            raise ConflictError(ErrorReason.ROOM_FULL, "房间已满")
        return room

    async def get_live_room(self, room_id: str) -> LiveRoom:
        """获取活跃房间；存储中存在但不在内存中的房间（如重启后）按需恢复，在线数为 0。"""
        live = self._rooms.get(room_id)
        if live is not None:
            return live

        room = await self.get_room(room_id)
        if self.is_archived(room):
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
        try:
            transcript = await self.repo.list_messages(room_id)
        except RoomError as e:
            logger.warning("恢复房间时读取转录失败 | room=%s | %s", room_id, e)
            transcript = []

        # 等待期间可能已被其他协程恢复
        live = self._rooms.get(room_id)
        if live is None:
            live = LiveRoom(room)
            live.transcript.extend(transcript)
            self._rooms[room_id] = live
            self.presence.track(room_id)
            logger.info("♻️ 房间已从存储恢复 | room=%s | 历史消息 %d 条", room_id, len(transcript))
        return live

    def presence_count(self, room_id: str) -> int:
        return self.presence.count(room_id)

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [
            live.info((self.presence.phase(live.room_id) or PresencePhase.IDLE).value)
            for live in self._rooms.values()
        ]

    # ── 连接进出 ──────────────────────────────────────────────────────

    async def connect(
        self,
        room_id: str,
        connection: Connection,
        claims: SessionClaims,
        *,
        address: str | None = None,
        user_agent: str | None = None,
    ) -> ParticipantSession:
        """登记一个已通过认证的连接，并向房间广播新的在线人数。

        Raises:
            NotFoundError: 房间不存在。
            ConflictError: ``ROOM_ARCHIVED`` 或 ``ROOM_FULL``。
        """
        live = await self.get_live_room(room_id)
        async with live.lock:
            if self.is_archived(live.record):
                raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
            if self.presence.count(room_id) >= live.record.capacity:
                raise ConflictError(ErrorReason.ROOM_FULL, "房间已满")

            session = ParticipantSession(
                id=uuid.uuid4().hex,
                room_id=room_id,
                display_name=claims.display_name,
                joined_at=utcnow(),
                address=address,
                user_agent=user_agent,
            )
            count = self.presence.connect(room_id)
            live.participants[session.id] = session
            live.sessions.append(session)
            live.broadcaster.add(session.id, connection)
            await live.broadcaster.broadcast(dump_event(PresenceEvent(count=count)))

        logger.info("👤 参与者进入房间 | room=%s | session=%s | 在线: %d", room_id, session.id, count)
        await self._best_effort(self.repo.insert_session(session), "写入会话记录")
        await self.record_event(
            room_id, "participant_connected",
            address=address, user_agent=user_agent,
            metadata={"sessionId": session.id, "displayName": session.display_name},
        )
        return session

    async def disconnect(self, room_id: str, session_id: str) -> None:
        """移除连接。重复断开或房间已被驱逐时静默忽略。"""
        live = self._rooms.get(room_id)
        if live is None:
            return
        async with live.lock:
            session = live.participants.pop(session_id, None)
            if session is None:
                return
            live.broadcaster.remove(session_id)
            session.left_at = utcnow()
            count = self.presence.disconnect(room_id)
            await live.broadcaster.broadcast(dump_event(PresenceEvent(count=count)))

        logger.info("👋 参与者离开房间 | room=%s | session=%s | 在线: %d", room_id, session_id, count)
        await self._best_effort(
            self.repo.mark_session_left(session_id, session.left_at), "更新会话记录",
        )
        await self.record_event(
            room_id, "participant_left",
            address=session.address, user_agent=session.user_agent,
            metadata={"sessionId": session_id},
        )

    # ── 消息 ──────────────────────────────────────────────────────────

    async def _require_live(self, room_id: str) -> LiveRoom:
        live = self._rooms.get(room_id)
        if live is not None and not self.is_archived(live.record):
            return live
        room = await self.get_room(room_id)
        if self.is_archived(room):
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
        raise AuthError(ErrorReason.NOT_JOINED, "未加入该房间")

    def _require_participant(self, live: LiveRoom, session_id: str) -> ParticipantSession:
        if self.is_archived(live.record):
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")
        session = live.participants.get(session_id)
        if session is None:
            raise AuthError(ErrorReason.NOT_JOINED, "未加入该房间")
        return session

    async def post_message(self, room_id: str, session_id: str, text: str) -> Message:
        """发送文本消息：落库 → 追加内存转录 → 广播，全程持有房间锁。

        Raises:
            ValidationError: 文本为空或过长。
            ConflictError: 房间已归档。
            AuthError: 会话不在房间内（``NOT_JOINED``）。
            StorageError: 落库失败，消息既不会追加也不会广播。
        """
        if (
            not isinstance(text, str)
            or not text.strip()
            or len(text) > self.cfg.MESSAGE_MAX_LENGTH
        ):
            raise ValidationError(ErrorReason.INVALID_TEXT, "消息为空或过长")

        live = await self._require_live(room_id)
        async with live.lock:
            session = self._require_participant(live, session_id)
            message = Message(
                id=uuid.uuid4().hex,
                room_id=room_id,
                kind="text",
                content=text,
                sender_id=session_id,
                sender_name=session.display_name,
                created_at=utcnow(),
            )
            await self.repo.append_message(message)
            live.transcript.append(message)
            await live.broadcaster.broadcast(
                dump_event(
                    ServerMessageEvent(
                        text=text,
                        sender=session.display_name or session_id,
                        timestamp=message.created_at.isoformat(),
                    ),
                ),
            )
        return message

    # ── 媒体 ──────────────────────────────────────────────────────────

    def media_url(self, room_id: str, file_name: str) -> str:
        """媒体的对外访问地址（由下载接口转为文件或预签名链接）。"""
        base = self.cfg.PUBLIC_BASE_URL.rstrip("/")
        return f"{base}/api/rooms/{room_id}/media/{quote(file_name)}"

    def _media_key(self, room_id: str, file_ref: str) -> str:
        prefix = f"rooms/{room_id}/"
        name = file_ref[len(prefix):] if file_ref.startswith(prefix) else file_ref
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "媒体不存在")
        return room_key(room_id, name)

    async def store_media(
        self,
        room_id: str,
        file_name: str,
        data: bytes,
        mime_type: str | None = None,
        *,
        address: str | None = None,
        user_agent: str | None = None,
    ) -> MediaObject:
        """上传媒体文件到房间命名空间，重名时自动改名。

        Raises:
            ValidationError: 空文件或超过大小上限。
            NotFoundError: 房间不存在。
            ConflictError: 房间已归档。
            StorageError: 对象存储或落库失败。
        """
        if not data:
            raise ValidationError(ErrorReason.EMPTY_UPLOAD, "文件为空")
        if len(data) > self.cfg.MAX_UPLOAD_BYTES:
            raise ValidationError(ErrorReason.UPLOAD_TOO_LARGE, "文件过大")

        room = await self.get_room(room_id)
        if self.is_archived(room):
            raise ConflictError(ErrorReason.ROOM_ARCHIVED, "房间已归档")

        mime = mime_type or "application/octet-stream"
        key = await self.blobs.put(room_id, file_name or "file", data, mime)
        media = MediaObject(
            room_id=room_id,
            storage_key=key,
            file_name=key.rsplit("/", 1)[-1],
            mime_type=mime,
            size_bytes=len(data),
            uploaded_at=utcnow(),
        )
        await self.repo.insert_media(media)
        await self.record_event(
            room_id, "media_uploaded",
            address=address, user_agent=user_agent,
            metadata={"storageKey": key, "mimeType": mime, "sizeBytes": len(data)},
        )
        logger.info("📎 媒体已上传 | room=%s | key=%s | size=%d", room_id, key, len(data))
        return media

    async def post_media(self, room_id: str, session_id: str, file_ref: str) -> Message:
        """发送媒体消息（引用已上传的文件）并广播。

        Raises:
            NotFoundError: 引用的媒体不属于本房间或不存在。
            ConflictError: 房间已归档。
            AuthError: 会话不在房间内。
        """
        key = self._media_key(room_id, file_ref)
        live = await self._require_live(room_id)
        media = await self.repo.get_media(room_id, key)
        if media is None:
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "媒体不存在")

        async with live.lock:
            session = self._require_participant(live, session_id)
            message = Message(
                id=uuid.uuid4().hex,
                room_id=room_id,
                kind="media",
                content=media.descriptor(),
                sender_id=session_id,
                sender_name=session.display_name,
                created_at=utcnow(),
            )
            await self.repo.append_message(message)
            live.transcript.append(message)
            await live.broadcaster.broadcast(
                dump_event(
                    ServerMediaEvent(
                        file_name=media.file_name,
                        mime=media.mime_type,
                        url=self.media_url(room_id, media.file_name),
                    ),
                ),
            )
        return message

    async def media_reference(self, room_id: str, name: str) -> tuple[MediaObject, BlobReference]:
        """返回媒体记录与可供下载的引用。

        Raises:
            NotFoundError: 媒体不存在。
        """
        key = self._media_key(room_id, name)
        media = await self.repo.get_media(room_id, key)
        if media is None:
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "媒体不存在")
        return media, await self.blobs.servable_reference(key)

    # ── 审计 ──────────────────────────────────────────────────────────

    async def record_event(
        self,
        room_id: str,
        event_type: str,
        *,
        address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """写入审计事件。失败只记录日志，不影响业务流程。"""
        await self._best_effort(
            self.repo.record_event(
                room_id, event_type,
                address=address, user_agent=user_agent, metadata=metadata,
            ),
            f"写入审计事件 {event_type}",
        )

    @staticmethod
    async def _best_effort(awaitable: Any, action: str) -> None:
        try:
            await awaitable
        except RoomError as e:
            logger.warning("%s失败 | %s", action, e)

    # ── 归档 ──────────────────────────────────────────────────────────

    def _on_presence_expired(self, room_id: str) -> None:
        self._tombstones[room_id] = utcnow()
        task = asyncio.get_running_loop().create_task(self._archive_and_evict(room_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _archive_and_evict(self, room_id: str) -> None:
        live = self._rooms.get(room_id)
        if live is None:
            return
        try:
            async with live.lock:
                result = await self.archiver.archive(
                    live.record, live.transcript, live.sessions,
                )
            self.last_results[room_id] = result
            await self.record_event(
                room_id, "room_archived",
                metadata={
                    "location": result.location,
                    "encrypted": result.encrypted,
                    "messageCount": result.message_count,
                    "failedSteps": result.failed_steps,
                },
            )
        except Exception:
            logger.exception("归档任务异常 | room=%s", room_id)
        finally:
            # 无论归档是否完整都驱逐，墓碑保证房间不可再加入
            self._rooms.pop(room_id, None)
            self.presence.forget(room_id)
            logger.info("🧹 房间已驱逐 | room=%s", room_id)

    async def wait_archived(self) -> None:
        """等待所有进行中的归档任务完成。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """进程关闭：取消所有宽限计时器，等待进行中的归档完成。"""
        self.presence.close()
        await self.wait_archived()
        logger.info("注册表已关闭 | 活跃房间 %d 个", len(self._rooms))
