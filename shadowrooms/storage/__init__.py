"""
shadowrooms.storage
~~~~~~~~~~~~~~~~~~~

对象存储（媒体文件与归档产物）。后端在启动时按 ``BLOB_BACKEND`` 选择一次。
"""
from __future__ import annotations

from shadowrooms.core.config import Settings
from shadowrooms.core.logging import get_logger
from shadowrooms.storage.blob_store import (
    BlobReference,
    BlobStore,
    LocalBlobStore,
    S3BlobStore,
    room_key,
    sanitize_filename,
)

logger = get_logger(__name__)


def create_blob_store(cfg: Settings) -> BlobStore:
    """按配置构造对象存储后端。"""
    if cfg.BLOB_BACKEND == "s3":
        logger.info("使用 S3 对象存储 | bucket=%s", cfg.S3_BUCKET)
        return S3BlobStore(
            cfg.S3_BUCKET,
            region=cfg.S3_REGION,
            endpoint_url=cfg.S3_ENDPOINT_URL,
            signed_url_ttl=cfg.SIGNED_URL_TTL_SECONDS,
        )
    logger.info("使用本地对象存储 | root=%s", cfg.MEDIA_ROOT)
    return LocalBlobStore(cfg.MEDIA_ROOT)


__all__ = [
    "BlobReference",
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "create_blob_store",
    "room_key",
    "sanitize_filename",
]
