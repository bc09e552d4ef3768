"""
shadowrooms.schemas.rooms
~~~~~~~~~~~~~~~~~~~~~~~~~

房间相关的 Pydantic 请求/响应模型。

对外 JSON 字段统一使用 camelCase（``roomId``、``magicLink`` …），
请求体同时接受 snake_case。
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 请求体 ────────────────────────────────────────────────────────────

class CreateRoomRequest(CamelModel):
    """建房请求体。取值范围由业务层校验，以便返回稳定的原因码。"""

    password: str = Field(..., description="房间密码")
    capacity: int | None = Field(default=None, description="房间容量（缺省使用配置默认值）")


class JoinRequest(CamelModel):
    """入房请求体。"""

    password: str = Field(..., description="房间密码")
    display_name: str | None = Field(default=None, description="昵称（可选，最长 32 字符）")


# ── 响应数据 ──────────────────────────────────────────────────────────

class CreateRoomData(CamelModel):
    room_id: str = Field(..., description="房间 ID")
    magic_token: str = Field(..., description="魔法链接令牌")
    magic_link: str = Field(..., description="可分享的完整链接")


class ResolveData(CamelModel):
    room_id: str = Field(..., description="令牌对应的房间 ID")


class JoinData(CamelModel):
    room_id: str = Field(..., description="房间 ID")
    session_token: str = Field(..., description="会话令牌（WebSocket 与上传接口使用）")
    display_name: str | None = Field(default=None, description="规范化后的昵称")
    expires_at: str = Field(..., description="令牌过期时间（ISO 格式）")


class MediaUploadData(CamelModel):
    storage_key: str = Field(..., description="对象存储键")
    file_name: str = Field(..., description="最终文件名（冲突时已重命名）")
    mime_type: str = Field(..., description="MIME 类型")
    size_bytes: int = Field(..., description="文件大小（字节）")


class RoomInfoData(CamelModel):
    """活跃房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    capacity: int = Field(..., description="房间容量")
    online_count: int = Field(..., description="当前在线人数")
    phase: str = Field(..., description="生命周期阶段")
    created_at: str = Field(..., description="创建时间（ISO 格式）")
