"""
shadowrooms.api.rooms
~~~~~~~~~~~~~~~~~~~~~

房间 REST 接口：建房、解析魔法链接、入房、媒体上传与下载。

端点:
  - ``POST /rooms``                          → 建房，返回魔法链接
  - ``GET  /resolve/{token}``                → 魔法链接令牌 → 房间 ID
  - ``POST /rooms/{room_id}/join``           → 校验密码，签发会话令牌
  - ``POST /rooms/{room_id}/media``          → 上传媒体（需 Bearer 会话令牌）
  - ``GET  /rooms/{room_id}/media/{name}``   → 下载媒体（本地文件或重定向到预签名链接）
  - ``GET  /rooms``                          → 活跃房间列表
"""
from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import FileResponse, RedirectResponse

from shadowrooms.api.deps import client_address, get_access, get_registry, get_session_claims
from shadowrooms.core.rate_limit import limiter
from shadowrooms.core.security import SessionClaims
from shadowrooms.schemas.api_response import ApiResponse
from shadowrooms.schemas.rooms import (
    CreateRoomData,
    CreateRoomRequest,
    JoinData,
    JoinRequest,
    MediaUploadData,
    ResolveData,
    RoomInfoData,
)
from shadowrooms.services.access import AccessControl
from shadowrooms.services.registry import RoomRegistry

router: APIRouter = APIRouter()


def _magic_link(request: Request, token: str) -> str:
    base = request.app.state.settings.PUBLIC_BASE_URL or str(request.base_url)
    return f"{base.rstrip('/')}/r/{token}"


# ── 房间 ──────────────────────────────────────────────────────────────

@router.post("/rooms", summary="创建房间", response_model=ApiResponse[CreateRoomData])
@limiter.limit("10/minute")
async def create_room(
    request: Request,
    body: CreateRoomRequest,
    registry: RoomRegistry = Depends(get_registry),
):
    """创建一个带密码的临时房间，返回可分享的魔法链接。"""
    room = await registry.create_room(
        body.password,
        body.capacity,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ApiResponse.ok(
        data=CreateRoomData(
            room_id=room.id,
            magic_token=room.magic_token,
            magic_link=_magic_link(request, room.magic_token),
        ),
    )


@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, registry: RoomRegistry = Depends(get_registry)):
    """返回当前进程内所有活跃房间的摘要。"""
    return ApiResponse.ok(data=registry.list_rooms())


@router.get("/resolve/{token}", summary="解析魔法链接", response_model=ApiResponse[ResolveData])
@limiter.limit("30/minute")
async def resolve_magic_link(
    request: Request,
    token: str,
    registry: RoomRegistry = Depends(get_registry),
):
    """魔法链接令牌 → 房间 ID。未知令牌返回 404。"""
    room_id = await registry.resolve_magic_token(token)
    return ApiResponse.ok(data=ResolveData(room_id=room_id))


@router.post("/rooms/{room_id}/join", summary="加入房间", response_model=ApiResponse[JoinData])
@limiter.limit("20/minute")
async def join_room(
    request: Request,
    room_id: str,
    body: JoinRequest,
    access: AccessControl = Depends(get_access),
):
    """校验房间密码并签发会话令牌。

    失败时依次可能返回 404（房间不存在）、410（已归档）、429（已满）、401（密码错误）。
    """
    grant = await access.join(
        room_id,
        body.password,
        body.display_name,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ApiResponse.ok(
        data=JoinData(
            room_id=grant.room_id,
            session_token=grant.token,
            display_name=grant.display_name,
            expires_at=grant.expires_at.isoformat(),
        ),
    )


# ── 媒体 ──────────────────────────────────────────────────────────────

@router.post(
    "/rooms/{room_id}/media",
    summary="上传媒体",
    response_model=ApiResponse[MediaUploadData],
)
@limiter.limit("30/minute")
async def upload_media(
    request: Request,
    room_id: str,
    file: UploadFile = File(...),
    claims: SessionClaims = Depends(get_session_claims),
    registry: RoomRegistry = Depends(get_registry),
):
    """上传媒体文件到房间命名空间。

    只负责存储，随后由客户端通过 WebSocket ``media`` 事件引用 ``storageKey`` 发送到房间。
    """
    # 多读 1 字节用于判断是否超限
    data = await file.read(request.app.state.settings.MAX_UPLOAD_BYTES + 1)
    media = await registry.store_media(
        room_id,
        file.filename or "file",
        data,
        file.content_type,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ApiResponse.ok(
        data=MediaUploadData(
            storage_key=media.storage_key,
            file_name=media.file_name,
            mime_type=media.mime_type,
            size_bytes=media.size_bytes,
        ),
    )


@router.get("/rooms/{room_id}/media/{name}", summary="下载媒体")
@limiter.limit("120/minute")
async def fetch_media(
    request: Request,
    room_id: str,
    name: str,
    registry: RoomRegistry = Depends(get_registry),
):
    """本地存储直接返回文件；S3 存储 307 重定向到短时效的预签名链接。"""
    media, reference = await registry.media_reference(room_id, name)
    if reference.url is not None:
        return RedirectResponse(reference.url, status_code=307)
    return FileResponse(
        reference.path,
        media_type=media.mime_type,
        filename=media.file_name,
        content_disposition_type="inline",
    )
