"""
shadowrooms.services.access
~~~~~~~~~~~~~~~~~~~~~~~~~~~

访问控制：入房（密码校验 + 容量检查 + 签发会话令牌）与令牌认证。

入房检查顺序:
  1. 房间不存在      → ``NotFoundError``
  2. 房间已归档      → ``ConflictError(ROOM_ARCHIVED)``
  3. 房间已满        → ``ConflictError(ROOM_FULL)``（与密码是否正确无关）
  4. 密码错误        → ``AuthError(INVALID_PASSWORD)``

密码校验在线程池中执行，是一个挂起点；校验通过后会重新检查归档/容量。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from shadowrooms.core.errors import AuthError, ErrorReason
from shadowrooms.core.logging import get_logger
from shadowrooms.core.security import PasswordHasher, SessionClaims, SessionTokens
from shadowrooms.services.registry import RoomRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    """入房成功后签发的会话凭证。"""

    room_id: str
    token: str
    display_name: str | None
    expires_at: datetime


def normalize_display_name(value: str | None, max_length: int = 32) -> str | None:
    """去除首尾空白并截断；空字符串视为未提供。"""
    if value is None:
        return None
    name = value.strip()[:max_length].strip()
    return name or None


class AccessControl:
    """访问控制服务。

    Attributes:
        registry: 房间注册表。
        hasher: 密码哈希器。
        tokens: 会话令牌签发器。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        hasher: PasswordHasher,
        tokens: SessionTokens,
        display_name_max_length: int = 32,
    ) -> None:
        self.registry = registry
        self.hasher = hasher
        self.tokens = tokens
        self.display_name_max_length = display_name_max_length

    async def join(
        self,
        room_id: str,
        password: str,
        display_name: str | None = None,
        *,
        address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionGrant:
        """校验密码并签发会话令牌。

        Raises:
            NotFoundError: 房间不存在。
            ConflictError: ``ROOM_ARCHIVED`` / ``ROOM_FULL``。
            AuthError: ``INVALID_PASSWORD``。
        """
        room = await self.registry.ensure_joinable(room_id)
        if not isinstance(password, str) or not await self.hasher.verify(password, room.password_hash):
            logger.info("🔒 入房密码错误 | room=%s | address=%s", room_id, address)
            raise AuthError(ErrorReason.INVALID_PASSWORD, "密码错误")

        # 密码校验期间房间可能已被归档或已满
        await self.registry.ensure_joinable(room_id)

        name = normalize_display_name(display_name, self.display_name_max_length)
        token = self.tokens.issue(room_id, name)
        claims = self.tokens.decode(token)
        await self.registry.record_event(
            room_id, "user_joined",
            address=address, user_agent=user_agent,
            metadata={"displayName": name, "joinedAt": claims.issued_at.isoformat()},
        )
        logger.info("🔑 入房成功 | room=%s | name=%s", room_id, name)
        return SessionGrant(
            room_id=room_id,
            token=token,
            display_name=name,
            expires_at=claims.expires_at,
        )

    def authenticate(self, token: str | None, room_id: str | None = None) -> SessionClaims:
        """校验会话令牌，可选地要求令牌属于指定房间。

        Raises:
            AuthError: ``INVALID_SESSION`` / ``SESSION_EXPIRED`` / ``ROOM_MISMATCH``。
        """
        if not token:
            raise AuthError(ErrorReason.INVALID_SESSION, "缺少会话令牌")
        claims = self.tokens.decode(token)
        if room_id is not None and claims.room_id != room_id:
            logger.debug("会话令牌与房间不匹配 | token_room=%s | room=%s", claims.room_id, room_id)
            raise AuthError(ErrorReason.ROOM_MISMATCH, "会话令牌不属于该房间")
        return claims
