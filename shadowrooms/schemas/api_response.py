"""
shadowrooms.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口共用的外层 JSON 结构。

成功时 ``msg`` 固定为 ``"success"``；失败时 ``msg`` 与 ``data.reason``
都是 ``ErrorReason`` 中的原因码，``data.detail`` 仅供人工排查。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from shadowrooms.core.errors import ErrorReason, RoomError

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """外层应答。

    .. code-block:: json

        {"code": 200, "data": {"roomId": "..."}, "msg": "success"}
        {"code": 410, "data": {"reason": "ROOM_ARCHIVED", "detail": "..."}, "msg": "ROOM_ARCHIVED"}

    ``code`` 与 HTTP 状态码保持一致。
    """

    code: int = Field(default=200, description="与 HTTP 状态码一致")
    data: T = Field(..., description="业务数据或失败原因")
    msg: str = Field(default="success", description="success 或原因码")

    @classmethod
    def ok(cls, data: T) -> ApiResponse[T]:
        return cls(data=data)

    @classmethod
    def rejected(cls, reason: ErrorReason | str, code: int, detail: str | None = None) -> ApiResponse[Any]:
        """失败应答，``msg`` 取原因码。"""
        value = reason.value if isinstance(reason, ErrorReason) else reason
        payload = {"reason": value, "detail": detail} if detail is not None else {"reason": value}
        return cls(code=code, data=payload, msg=value)

    @classmethod
    def from_error(cls, exc: RoomError) -> ApiResponse[Any]:
        return cls.rejected(exc.reason, exc.status_code, exc.message)
