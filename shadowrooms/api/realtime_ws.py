"""
shadowrooms.api.realtime_ws
~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 实时接口：``/ws/rooms/{room_id}?token=<会话令牌>``。

握手前校验会话令牌与房间状态，失败时直接以应用关闭码拒绝:
  - ``4401`` 令牌无效 / 过期 / 不属于该房间
  - ``4404`` 房间不存在
  - ``4410`` 房间已归档
  - ``4429`` 房间已满

连接建立后的事件格式见 ``shadowrooms.schemas.events``。
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from shadowrooms.core.errors import ErrorReason, RoomError
from shadowrooms.core.logging import get_logger, request_id_ctx_var
from shadowrooms.core.rate_limit import WebSocketRateLimiter
from shadowrooms.schemas.events import (
    ErrorEvent,
    JoinEvent,
    LeaveEvent,
    MediaEvent,
    MessageEvent,
    PresenceEvent,
    dump_event,
    parse_client_event,
)
from shadowrooms.services.access import AccessControl
from shadowrooms.services.registry import RoomRegistry

logger = get_logger(__name__)

router: APIRouter = APIRouter()

_CLOSE_CODES: dict[ErrorReason, int] = {
    ErrorReason.INVALID_SESSION: 4401,
    ErrorReason.SESSION_EXPIRED: 4401,
    ErrorReason.ROOM_MISMATCH: 4401,
    ErrorReason.ROOM_NOT_FOUND: 4404,
    ErrorReason.ROOM_ARCHIVED: 4410,
    ErrorReason.ROOM_FULL: 4429,
}


def close_code_for(exc: RoomError) -> int:
    return _CLOSE_CODES.get(exc.reason, 1011)


async def _send_error(websocket: WebSocket, reason: ErrorReason) -> None:
    await websocket.send_json(dump_event(ErrorEvent(reason=reason.value)))


@router.websocket("/ws/rooms/{room_id}")
async def websocket_room_endpoint(
    websocket: WebSocket,
    room_id: str,
    token: str | None = None,
) -> None:
    """房间 WebSocket 端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_id: 房间 ID。
        token: 入房时签发的会话令牌（查询参数）。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    ctx_token = request_id_ctx_var.set(ws_req_id)

    try:
        registry: RoomRegistry = websocket.app.state.registry
        access: AccessControl = websocket.app.state.access
        address = websocket.client.host if websocket.client else None
        user_agent = websocket.headers.get("user-agent")

        try:
            claims = access.authenticate(token, room_id)
            await registry.ensure_joinable(room_id)
        except RoomError as e:
            logger.info("拒绝 WebSocket 连接 | room=%s | reason=%s", room_id, e.reason.value)
            await websocket.close(code=close_code_for(e))
            return

        await websocket.accept()
        try:
            session = await registry.connect(
                room_id, websocket, claims, address=address, user_agent=user_agent,
            )
        except RoomError as e:
            # 握手期间房间被占满或归档
            await _send_error(websocket, e.reason)
            await websocket.close(code=close_code_for(e))
            return

        ws_limiter = WebSocketRateLimiter(
            interval_seconds=websocket.app.state.settings.WS_RATE_LIMIT_INTERVAL,
        )
        left = False
        try:
            while True:
                raw = await websocket.receive_text()
                if not ws_limiter.is_allowed(session.id):
                    await _send_error(websocket, ErrorReason.RATE_LIMITED)
                    continue
                try:
                    event = parse_client_event(raw)
                except PydanticValidationError:
                    await _send_error(websocket, ErrorReason.INVALID_EVENT)
                    continue
                if event.room_id is not None and event.room_id != room_id:
                    await _send_error(websocket, ErrorReason.ROOM_MISMATCH)
                    continue

                if isinstance(event, LeaveEvent):
                    left = True
                    break
                if isinstance(event, JoinEvent):
                    # 连接即已入房，这里只回报当前在线人数
                    await websocket.send_json(
                        dump_event(PresenceEvent(count=registry.presence_count(room_id))),
                    )
                    continue
                try:
                    if isinstance(event, MessageEvent):
                        await registry.post_message(room_id, session.id, event.text)
                    elif isinstance(event, MediaEvent):
                        await registry.post_media(room_id, session.id, event.file_ref)
                except RoomError as e:
                    logger.info("事件处理失败 | room=%s | reason=%s", room_id, e.reason.value)
                    await _send_error(websocket, e.reason)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 异常: %s | room=%s", e, room_id, exc_info=True)
        finally:
            await registry.disconnect(room_id, session.id)
            ws_limiter.forget(session.id)

        if left:
            await websocket.close(code=1000)
    finally:
        request_id_ctx_var.reset(ctx_token)
