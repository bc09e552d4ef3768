"""
shadowrooms.core.security
~~~~~~~~~~~~~~~~~~~~~~~~~

访问控制的底层原语：

- ``PasswordHasher``：argon2id 慢哈希（加盐、内存困难），CPU 密集操作放到线程池执行
- ``SessionTokens``：签发/校验有时效的会话令牌（JWT, HS256）

令牌只绑定房间 ID 与昵称，有效期固定，与房间自身的生命周期无关：
房间归档后令牌依旧能通过签名校验，但随后的房间检查会失败。
"""
from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from argon2 import PasswordHasher as _Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError

from shadowrooms.core.errors import AuthError, ErrorReason
from shadowrooms.core.logging import get_logger

logger = get_logger(__name__)

_TOKEN_ALGORITHM: str = "HS256"


class PasswordHasher:
    """argon2id 密码哈希。

    Args:
        time_cost: 迭代次数。
        memory_cost: 内存开销（KiB）。
        parallelism: 并行度。
    """

    def __init__(
        self,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )

    def hash_sync(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_sync(self, plaintext: str, encoded: str) -> bool:
        try:
            return self._hasher.verify(encoded, plaintext)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("存储的密码哈希格式无法识别")
            return False

    async def hash(self, plaintext: str) -> str:
        """计算密码哈希（在线程池中执行）。"""
        return await asyncio.to_thread(self.hash_sync, plaintext)

    async def verify(self, plaintext: str, encoded: str) -> bool:
        """校验密码，不匹配时返回 ``False`` 而不是抛异常。"""
        return await asyncio.to_thread(self.verify_sync, plaintext, encoded)


@dataclass(frozen=True)
class SessionClaims:
    """解码后的会话令牌内容。"""

    room_id: str
    display_name: str | None
    token_id: str
    issued_at: datetime
    expires_at: datetime


class SessionTokens:
    """会话令牌签发器。

    Attributes:
        ttl: 令牌有效期。
    """

    def __init__(self, secret: str | None, ttl_seconds: int = 7200) -> None:
        if not secret:
            logger.warning("⚠️ 未配置 SESSION_SECRET，使用进程内随机密钥（重启后令牌全部失效）")
            secret = secrets.token_hex(32)
        self._secret = secret
        self.ttl = timedelta(seconds=ttl_seconds)

    def issue(
        self,
        room_id: str,
        display_name: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """签发一个绑定房间的令牌。"""
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "room": room_id,
            "name": display_name,
            "jti": uuid.uuid4().hex,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_TOKEN_ALGORITHM)

    def decode(self, token: str) -> SessionClaims:
        """校验签名与有效期并解码。

        Raises:
            AuthError: ``SESSION_EXPIRED`` 或 ``INVALID_SESSION``。
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_TOKEN_ALGORITHM],
                options={"require": ["exp", "iat", "room", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError(ErrorReason.SESSION_EXPIRED, "会话已过期") from e
        except jwt.InvalidTokenError as e:
            raise AuthError(ErrorReason.INVALID_SESSION, "会话令牌无效") from e

        room_id = payload.get("room")
        if not isinstance(room_id, str) or not room_id:
            raise AuthError(ErrorReason.INVALID_SESSION, "会话令牌无效")
        name = payload.get("name")
        return SessionClaims(
            room_id=room_id,
            display_name=name if isinstance(name, str) else None,
            token_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
