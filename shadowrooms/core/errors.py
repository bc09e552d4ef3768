"""
shadowrooms.core.errors
~~~~~~~~~~~~~~~~~~~~~~~

业务异常体系。

所有可预期的失败都抛出 ``RoomError`` 的子类，携带稳定的机器可读原因码
（``ErrorReason``）和对应的 HTTP 状态码，由 ``main`` 中的异常处理器统一
转换为 ``ApiResponse.from_error()``。

- ``ValidationError``：参数不合法，发生在任何副作用之前
- ``AuthError``：密码错误、会话令牌无效/过期/伪造
- ``NotFoundError``：房间或媒体不存在
- ``ConflictError``：房间已归档 / 房间已满
- ``StorageError``：存储后端不可用
- ``IntegrityError``：解密时认证标签校验失败
"""
from __future__ import annotations

from enum import Enum


class ErrorReason(str, Enum):
    """稳定的错误原因码，直接暴露给调用方。"""

    INVALID_CAPACITY = "INVALID_CAPACITY"
    INVALID_PASSWORD_LENGTH = "INVALID_PASSWORD_LENGTH"
    INVALID_TEXT = "INVALID_TEXT"
    INVALID_EVENT = "INVALID_EVENT"
    EMPTY_UPLOAD = "EMPTY_UPLOAD"
    UPLOAD_TOO_LARGE = "UPLOAD_TOO_LARGE"

    INVALID_PASSWORD = "INVALID_PASSWORD"
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ROOM_MISMATCH = "ROOM_MISMATCH"
    NOT_JOINED = "NOT_JOINED"

    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    MEDIA_NOT_FOUND = "MEDIA_NOT_FOUND"

    ROOM_ARCHIVED = "ROOM_ARCHIVED"
    ROOM_FULL = "ROOM_FULL"
    RATE_LIMITED = "RATE_LIMITED"

    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    INTEGRITY_CHECK_FAILED = "INTEGRITY_CHECK_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# 原因码 → HTTP 状态码
_STATUS_BY_REASON: dict[ErrorReason, int] = {
    ErrorReason.INVALID_CAPACITY: 400,
    ErrorReason.INVALID_PASSWORD_LENGTH: 400,
    ErrorReason.INVALID_TEXT: 400,
    ErrorReason.INVALID_EVENT: 400,
    ErrorReason.EMPTY_UPLOAD: 400,
    ErrorReason.UPLOAD_TOO_LARGE: 413,
    ErrorReason.INVALID_PASSWORD: 401,
    ErrorReason.INVALID_SESSION: 401,
    ErrorReason.SESSION_EXPIRED: 401,
    ErrorReason.ROOM_MISMATCH: 403,
    ErrorReason.NOT_JOINED: 403,
    ErrorReason.ROOM_NOT_FOUND: 404,
    ErrorReason.MEDIA_NOT_FOUND: 404,
    ErrorReason.ROOM_ARCHIVED: 410,
    ErrorReason.ROOM_FULL: 429,
    ErrorReason.RATE_LIMITED: 429,
    ErrorReason.STORAGE_UNAVAILABLE: 503,
    ErrorReason.INTEGRITY_CHECK_FAILED: 500,
    ErrorReason.INTERNAL_ERROR: 500,
}


class RoomError(Exception):
    """所有业务异常的基类。

    Attributes:
        reason: 机器可读的原因码。
        message: 人类可读的描述（不含任何敏感信息）。
    """

    default_reason: ErrorReason = ErrorReason.STORAGE_UNAVAILABLE

    def __init__(self, reason: ErrorReason | None = None, message: str | None = None) -> None:
        self.reason: ErrorReason = reason or self.default_reason
        self.message: str = message or self.reason.value
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        """对应的 HTTP 状态码。"""
        return _STATUS_BY_REASON.get(self.reason, 500)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason.value!r}, {self.message!r})"


class ValidationError(RoomError):
    default_reason = ErrorReason.INVALID_TEXT


class AuthError(RoomError):
    default_reason = ErrorReason.INVALID_SESSION


class NotFoundError(RoomError):
    default_reason = ErrorReason.ROOM_NOT_FOUND


class ConflictError(RoomError):
    default_reason = ErrorReason.ROOM_ARCHIVED


class StorageError(RoomError):
    default_reason = ErrorReason.STORAGE_UNAVAILABLE


class IntegrityError(RoomError):
    default_reason = ErrorReason.INTEGRITY_CHECK_FAILED
