"""
shadowrooms.core.config
~~~~~~~~~~~~~~~~~~~~~~~

运行配置（pydantic-settings）。

取值优先级从高到低：环境变量、``.env.{ENVIRONMENT}``、``.env``、字段默认值。
选择哪个 ``.env.{ENVIRONMENT}`` 文件只看进程环境变量里的 ``ENVIRONMENT``。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")

_LOG_LEVEL_BY_ENV: dict[str, str] = {"dev": "INFO", "test": "DEBUG", "prod": "WARNING"}


class Settings(BaseSettings):
    """Shadowrooms 的全部可调参数。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Shadowrooms", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8080, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别；未设置时按环境推断")
    PUBLIC_BASE_URL: str = Field(
        default="",
        description="对外访问的基础 URL，用于拼接 magic link；为空时使用请求的 base_url",
    )

    # ── 关系型存储 ────────────────────────────────────────────────────
    DATABASE_BACKEND: Literal["sqlite", "postgres"] = Field(
        default="sqlite",
        description="关系型存储后端，仅在启动时选择一次",
    )
    SQLITE_PATH: str = Field(default="data/shadowrooms.db", description="SQLite 数据库文件路径")
    DATABASE_URL: str = Field(default="", description="PostgreSQL 连接串（postgres 后端必填）")
    DATABASE_POOL_SIZE: int = Field(default=5, ge=1, description="PostgreSQL 连接池大小")

    # ── 媒体 / 归档对象存储 ───────────────────────────────────────────
    BLOB_BACKEND: Literal["local", "s3"] = Field(
        default="local",
        description="媒体与归档文件的存储后端：本地目录 / S3 兼容对象存储",
    )
    MEDIA_ROOT: str = Field(default="data/blobs", description="本地存储根目录")
    S3_BUCKET: str = Field(default="", description="S3 bucket 名称（s3 后端必填）")
    S3_REGION: str | None = Field(default=None, description="S3 区域")
    S3_ENDPOINT_URL: str | None = Field(default=None, description="S3 兼容服务的自定义 endpoint")
    SIGNED_URL_TTL_SECONDS: int = Field(default=60, ge=1, description="预签名下载链接有效期（秒）")
    MAX_UPLOAD_BYTES: int = Field(default=100 * 1024 * 1024, ge=1, description="单个上传文件大小上限")

    # ── 安全 ──────────────────────────────────────────────────────────
    ENCRYPTION_KEY: str | None = Field(
        default=None,
        description="32 字节 AES-256-GCM 密钥（hex 或 base64）；为空时归档以明文写入",
    )
    SESSION_SECRET: str | None = Field(default=None, description="会话令牌签名密钥")
    SESSION_TTL_SECONDS: int = Field(default=2 * 60 * 60, ge=1, description="会话令牌有效期（秒）")

    # ── 房间规则 ──────────────────────────────────────────────────────
    CAPACITY_MIN: int = Field(default=2, ge=1, description="房间容量下限")
    CAPACITY_MAX: int = Field(default=50, ge=1, description="房间容量上限")
    CAPACITY_DEFAULT: int = Field(default=10, ge=1, description="未指定时的默认容量")
    PASSWORD_MIN_LENGTH: int = Field(default=4, ge=1, description="房间密码最短长度")
    PASSWORD_MAX_LENGTH: int = Field(default=256, ge=1, description="房间密码最长长度")
    DISPLAY_NAME_MAX_LENGTH: int = Field(default=32, ge=1, description="昵称最大长度")
    MESSAGE_MAX_LENGTH: int = Field(default=4000, ge=1, description="单条文本消息最大长度")
    GRACE_PERIOD_SECONDS: float = Field(
        default=5.0,
        ge=0,
        description="人数归零后到触发归档之间的宽限期（秒），用于吸收刷新/断线重连",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="是否启用 HTTP 限流")
    RATE_LIMIT_STORAGE_URI: str = Field(default="memory://", description="slowapi 限流计数存储")
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.3,
        ge=0,
        description="同一 WebSocket 连接两条消息之间的最小间隔（秒）",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> Settings:
        """跨字段校验：容量区间、后端必填项。"""
        if self.CAPACITY_MIN > self.CAPACITY_MAX:
            raise ValueError("CAPACITY_MIN 不能大于 CAPACITY_MAX")
        if not self.CAPACITY_MIN <= self.CAPACITY_DEFAULT <= self.CAPACITY_MAX:
            raise ValueError("CAPACITY_DEFAULT 必须位于 [CAPACITY_MIN, CAPACITY_MAX] 区间内")
        if self.DATABASE_BACKEND == "postgres" and not self.DATABASE_URL:
            raise ValueError("DATABASE_BACKEND=postgres 时必须配置 DATABASE_URL")
        if self.BLOB_BACKEND == "s3" and not self.S3_BUCKET:
            raise ValueError("BLOB_BACKEND=s3 时必须配置 S3_BUCKET")
        if self.is_prod and not self.SESSION_SECRET:
            raise ValueError("prod 环境必须配置 SESSION_SECRET")
        return self

    # ── 环境 ──────────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def debug(self) -> bool:
        """FastAPI debug 与 uvicorn 热重载只在 dev 打开。"""
        return self.ENVIRONMENT == "dev"

    @property
    def reload(self) -> bool:
        # 在线状态保存在进程内存，热重载会清空所有房间
        return self.debug

    @property
    def effective_log_level(self) -> str:
        """显式配置的 ``LOG_LEVEL`` 优先，否则按环境取 dev=INFO / test=DEBUG / prod=WARNING。"""
        if "LOG_LEVEL" in self.model_fields_set:
            return self.LOG_LEVEL.upper()
        return _LOG_LEVEL_BY_ENV.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """进程级配置单例。测试可直接构造 ``Settings(...)`` 传给 ``create_app``。"""
    return Settings()


settings: Settings = get_settings()
