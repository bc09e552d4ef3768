"""
shadowrooms.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件模型。

客户端 → 服务端:
  - ``{"type": "join", "roomId"}``
  - ``{"type": "message", "roomId", "text"}``
  - ``{"type": "media", "roomId", "fileRef"}``
  - ``{"type": "leave", "roomId"}``

服务端 → 客户端:
  - ``{"type": "message", "text", "sender", "timestamp"}``
  - ``{"type": "media", "fileName", "mime", "url"}``
  - ``{"type": "presence", "count"}``
  - ``{"type": "error", "reason"}``
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter

from shadowrooms.schemas.rooms import CamelModel


# ── 客户端事件 ────────────────────────────────────────────────────────

class JoinEvent(CamelModel):
    type: Literal["join"]
    room_id: str | None = None


class MessageEvent(CamelModel):
    type: Literal["message"]
    room_id: str | None = None
    text: str


class MediaEvent(CamelModel):
    type: Literal["media"]
    room_id: str | None = None
    file_ref: str


class LeaveEvent(CamelModel):
    type: Literal["leave"]
    room_id: str | None = None


ClientEvent = Annotated[
    Union[JoinEvent, MessageEvent, MediaEvent, LeaveEvent],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[Any] = TypeAdapter(ClientEvent)


def parse_client_event(raw: str | bytes) -> JoinEvent | MessageEvent | MediaEvent | LeaveEvent:
    """解析一帧客户端 JSON。格式不合法时抛出 ``pydantic.ValidationError``。"""
    return _client_event_adapter.validate_json(raw)


# ── 服务端事件 ────────────────────────────────────────────────────────

class ServerMessageEvent(CamelModel):
    type: Literal["message"] = "message"
    text: str
    sender: str
    timestamp: str


class ServerMediaEvent(CamelModel):
    type: Literal["media"] = "media"
    file_name: str
    mime: str
    url: str


class PresenceEvent(CamelModel):
    type: Literal["presence"] = "presence"
    count: int


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    reason: str


def dump_event(event: CamelModel) -> dict[str, Any]:
    """序列化为发往客户端的 JSON 字典。"""
    return event.model_dump(by_alias=True)
