"""
shadowrooms.storage.blob_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

媒体 / 归档文件的对象存储适配器。

两种后端对调用方透明，键名统一为 ``rooms/{room_id}/{name}``:
  - ``LocalBlobStore``：本地目录树，每个房间一个子目录
  - ``S3BlobStore``：S3 兼容对象存储（``boto3``），返回预签名下载链接

``put()`` 绝不静默覆盖已有对象：重名时依次尝试
``name (1).ext``、``name (2).ext``……直到找到空闲名称。
"""
from __future__ import annotations

import asyncio
import os
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from itertools import count, islice
from pathlib import Path
from typing import Any, Iterator

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shadowrooms.core.errors import ErrorReason, NotFoundError, StorageError
from shadowrooms.core.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._ -]+")
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_PRECONDITION_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


@dataclass(frozen=True)
class BlobReference:
    """可供客户端获取对象的引用：本地路径或（预签名）URL，二选一。"""

    url: str | None = None
    path: Path | None = None


def room_key(room_id: str, name: str) -> str:
    """房间命名空间下的对象键。"""
    return f"rooms/{room_id}/{name}"


def sanitize_filename(name: str) -> str:
    """只保留安全的 basename（字母数字、空格、``.``、``_``、``-``）。"""
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_CHARS_RE.sub("", unicodedata.normalize("NFKD", base)).strip()
    if not cleaned.strip("."):
        return "file"
    return cleaned


def candidate_names(desired: str) -> Iterator[str]:
    """``name.ext``、``name (1).ext``、``name (2).ext`` …"""
    base, ext = os.path.splitext(desired)
    yield desired
    for index in count(1):
        yield f"{base} ({index}){ext}"


class BlobStore(ABC):
    """对象存储抽象基类。"""

    max_attempts: int = 1000

    async def put(self, room_id: str, desired_name: str, data: bytes, mime_type: str) -> str:
        """在房间命名空间下存储对象，返回最终的存储键。

        Raises:
            StorageError: 后端失败，或连续 ``max_attempts`` 个候选名都已被占用。
        """
        name = sanitize_filename(desired_name)
        for candidate in islice(candidate_names(name), self.max_attempts):
            key = room_key(room_id, candidate)
            if await self._create_exclusive(key, data, mime_type):
                if candidate != name:
                    logger.debug("对象名冲突，已重命名 | %s -> %s", name, candidate)
                return key
        raise StorageError(message=f"找不到空闲的对象名: {name}")

    @abstractmethod
    async def _create_exclusive(self, key: str, data: bytes, mime_type: str) -> bool:
        """仅当 ``key`` 不存在时写入；已存在返回 ``False``。"""

    @abstractmethod
    async def put_object(self, key: str, data: bytes, mime_type: str) -> str:
        """按给定键写入（调用方保证键唯一），返回键。"""

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """读取对象内容。不存在时抛出 ``NotFoundError``。"""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """对象是否存在。"""

    @abstractmethod
    async def servable_reference(self, key: str) -> BlobReference:
        """返回可供客户端下载的引用。不存在时抛出 ``NotFoundError``。"""


class LocalBlobStore(BlobStore):
    """本地文件系统后端。

    Attributes:
        root: 存储根目录，键映射为 ``root / key``。
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def path_for(self, key: str) -> Path:
        """把键映射为根目录下的路径，拒绝任何逃逸出根目录的键。"""
        path = (self.root / key).resolve()
        if path == self.root or self.root not in path.parents:
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "非法的对象键")
        return path

    def _write_exclusive(self, path: Path, data: bytes) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError:
            return False
        return True

    def _write_replace(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    async def _create_exclusive(self, key: str, data: bytes, mime_type: str) -> bool:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(self._write_exclusive, path, data)
        except OSError as e:
            raise StorageError(message=f"本地写入失败: {e}") from e

    async def put_object(self, key: str, data: bytes, mime_type: str) -> str:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._write_replace, path, data)
        except OSError as e:
            raise StorageError(message=f"本地写入失败: {e}") from e
        return key

    async def get_object(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "对象不存在") from e
        except OSError as e:
            raise StorageError(message=f"本地读取失败: {e}") from e

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.path_for(key).is_file)

    async def servable_reference(self, key: str) -> BlobReference:
        path = self.path_for(key)
        if not await asyncio.to_thread(path.is_file):
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "对象不存在")
        return BlobReference(path=path)


class S3BlobStore(BlobStore):
    """S3 兼容对象存储后端。``boto3`` 是同步客户端，所有调用放到线程池执行。

    Attributes:
        bucket: 目标 bucket。
        signed_url_ttl: 预签名链接有效期（秒）。
    """

    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        signed_url_ttl: int = 60,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.signed_url_ttl = signed_url_ttl
        self.client = client or boto3.client(
            "s3", region_name=region, endpoint_url=endpoint_url,
        )

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get("Error", {}).get("Code", ""))

    async def _create_exclusive(self, key: str, data: bytes, mime_type: str) -> bool:
        # 部分 S3 兼容服务忽略条件写入，先查一次是否存在
        if await self.exists(key):
            return False
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket, Key=key, Body=data,
                ContentType=mime_type, IfNoneMatch="*",
            )
        except ClientError as e:
            if self._error_code(e) in _PRECONDITION_CODES:
                return False
            raise StorageError(message=f"S3 上传失败: {e}") from e
        except BotoCoreError as e:
            raise StorageError(message=f"S3 上传失败: {e}") from e
        return True

    async def put_object(self, key: str, data: bytes, mime_type: str) -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket, Key=key, Body=data, ContentType=mime_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(message=f"S3 上传失败: {e}") from e
        return key

    async def get_object(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except ClientError as e:
            if self._error_code(e) in _MISSING_CODES:
                raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "对象不存在") from e
            raise StorageError(message=f"S3 读取失败: {e}") from e
        except BotoCoreError as e:
            raise StorageError(message=f"S3 读取失败: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._error_code(e) in _MISSING_CODES:
                return False
            raise StorageError(message=f"S3 查询失败: {e}") from e
        except BotoCoreError as e:
            raise StorageError(message=f"S3 查询失败: {e}") from e
        return True

    async def servable_reference(self, key: str) -> BlobReference:
        if not await self.exists(key):
            raise NotFoundError(ErrorReason.MEDIA_NOT_FOUND, "对象不存在")
        try:
            url = await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.signed_url_ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(message=f"S3 签名失败: {e}") from e
        return BlobReference(url=url)
