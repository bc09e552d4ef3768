"""
shadowrooms.main
~~~~~~~~~~~~~~~~

FastAPI 应用入口：注册路由、挂载中间件、定义生命周期。

``create_app()`` 构造应用；lifespan 中依次建立存储连接、对象存储、
归档引擎、房间注册表与访问控制，并挂载到 ``app.state``。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from shadowrooms.api import realtime_ws, rooms
from shadowrooms.core.config import Settings, settings
from shadowrooms.core.crypto import TranscriptCipher
from shadowrooms.core.errors import AuthError, ErrorReason, RoomError, StorageError
from shadowrooms.core.logging import get_logger, request_id_ctx_var, setup_logging
from shadowrooms.core.rate_limit import limiter
from shadowrooms.core.security import PasswordHasher, SessionTokens
from shadowrooms.db import connect_database
from shadowrooms.db.room_repository import RoomRepository
from shadowrooms.schemas.api_response import ApiResponse
from shadowrooms.services.access import AccessControl
from shadowrooms.services.archival import ArchivalEngine
from shadowrooms.services.registry import RoomRegistry
from shadowrooms.storage import create_blob_store

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    cfg: Settings = app.state.settings
    db = await connect_database(cfg)

    cipher = TranscriptCipher.from_config(cfg.ENCRYPTION_KEY)
    if cipher is None:
        logger.warning("⚠️ 未配置 ENCRYPTION_KEY，消息与归档将以明文保存")

    repo = RoomRepository(db, cipher)
    blobs = create_blob_store(cfg)
    hasher: PasswordHasher = app.state.password_hasher
    archiver = ArchivalEngine(repo, blobs, cipher)
    registry = RoomRegistry(repo, blobs, archiver, hasher, cfg)
    access = AccessControl(
        registry,
        hasher,
        SessionTokens(cfg.SESSION_SECRET, cfg.SESSION_TTL_SECONDS),
        display_name_max_length=cfg.DISPLAY_NAME_MAX_LENGTH,
    )

    app.state.archiver = archiver
    app.state.registry = registry
    app.state.access = access
    logger.info(
        "🚀 应用已启动 | env=%s | db=%s | blobs=%s | encrypted=%s | grace=%.1fs",
        cfg.ENVIRONMENT,
        db.dialect,
        cfg.BLOB_BACKEND,
        cipher is not None,
        cfg.GRACE_PERIOD_SECONDS,
    )
    yield
    # ── 关闭 ──
    await registry.close()
    await db.close()
    logger.info("👋 应用已关闭")


# ── 异常处理器 ────────────────────────────────────────────────────────

async def room_error_handler(request: Request, exc: RoomError) -> JSONResponse:
    """业务异常 → ``ApiResponse.from_error()``。"""
    if isinstance(exc, StorageError):
        logger.error("存储不可用: %s %s -> %s", request.method, request.url.path, exc.message)
    elif isinstance(exc, AuthError):
        logger.info("认证失败: %s %s -> %s", request.method, request.url.path, exc.reason.value)
    else:
        logger.debug("业务异常: %s %s -> %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.from_error(exc).model_dump(),
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("触发限流: %s %s | %s", request.method, request.url.path, exc.detail)
    response = ApiResponse.rejected(ErrorReason.RATE_LIMITED, 429, str(exc.detail))
    return JSONResponse(status_code=429, content=response.model_dump())


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """兜底处理器：任何未处理异常都以 500 + 统一应答体返回。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # prod 不回传内部细节
    detail = None if request.app.state.settings.is_prod else str(exc)
    response = ApiResponse.rejected(ErrorReason.INTERNAL_ERROR, 500, detail)
    return JSONResponse(status_code=500, content=response.model_dump())


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

def create_app(cfg: Settings | None = None, *, password_hasher: PasswordHasher | None = None) -> FastAPI:
    """构造应用。测试中可传入独立的配置与低成本的密码哈希器。"""
    cfg = cfg or settings
    app = FastAPI(
        title=cfg.PROJECT_NAME,
        description="阅后即焚的密码聊天室 API",
        version=cfg.VERSION,
        debug=cfg.debug,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.password_hasher = password_hasher or PasswordHasher()
    app.state.limiter = limiter

    # ── CORS 中间件 ──
    if cfg.allow_cors_all_origins:
        # dev / test：放开全部来源
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[],
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """为每个请求分配 request_id（优先沿用 ``X-Request-ID``），注入日志上下文。"""
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        token = request_id_ctx_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers["X-Request-ID"] = req_id
        return response

    # ── 路由挂载 ──
    app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
    app.include_router(realtime_ws.router, tags=["WebSocket"])

    # ── 异常处理器 ──
    app.add_exception_handler(RoomError, room_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> JSONResponse:
        """验证服务是否正常运行。"""
        registry: RoomRegistry | None = getattr(request.app.state, "registry", None)
        return JSONResponse(
            content={
                "status": "ok",
                "environment": cfg.ENVIRONMENT,
                "debug": cfg.debug,
                "log_level": cfg.effective_log_level,
                "active_rooms": len(registry.list_rooms()) if registry else 0,
            },
        )

    return app


app: FastAPI = create_app()


if __name__ == "__main__":
    import uvicorn

    # 在线状态只存在于本进程内，只能单 worker 运行
    uvicorn.run(
        "shadowrooms.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        workers=1,
        log_level=settings.effective_log_level.lower(),
    )
