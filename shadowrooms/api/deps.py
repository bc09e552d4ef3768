"""
shadowrooms.api.deps
~~~~~~~~~~~~~~~~~~~~

FastAPI 依赖项：从 ``app.state`` 取出 lifespan 中构造的服务实例。
"""
from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from shadowrooms.core.security import SessionClaims
from shadowrooms.services.access import AccessControl
from shadowrooms.services.registry import RoomRegistry

_bearer = HTTPBearer(auto_error=False)


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_access(request: Request) -> AccessControl:
    return request.app.state.access


def get_session_claims(
    room_id: str,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    access: AccessControl = Depends(get_access),
) -> SessionClaims:
    """校验 ``Authorization: Bearer <token>``，令牌必须属于路径中的房间。"""
    token = credentials.credentials if credentials else None
    return access.authenticate(token, room_id)


def client_address(request: Request) -> str | None:
    return request.client.host if request.client else None
