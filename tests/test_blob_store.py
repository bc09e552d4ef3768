"""
tests.test_blob_store
~~~~~~~~~~~~~~~~~~~~~

对象存储测试：本地后端使用 ``tmp_path``，S3 后端使用 Mock 客户端。
"""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from shadowrooms.core.errors import ErrorReason, NotFoundError, StorageError
from shadowrooms.storage.blob_store import (
    LocalBlobStore,
    S3BlobStore,
    candidate_names,
    room_key,
    sanitize_filename,
)


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ── 文件名 ────────────────────────────────────────────────────────────

class TestNames:
    """测试文件名清洗与候选名生成。"""

    def test_room_key(self) -> None:
        assert room_key("r1", "a.png") == "rooms/r1/a.png"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("photo.png", "photo.png"),
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\cat.jpg", "cat.jpg"),
            ("héllo wörld.png", "hello world.png"),
            ("???", "file"),
            ("..", "file"),
        ],
    )
    def test_sanitize(self, raw: str, expected: str) -> None:
        assert sanitize_filename(raw) == expected

    def test_candidates(self) -> None:
        names = candidate_names("photo.png")
        assert [next(names) for _ in range(3)] == ["photo.png", "photo (1).png", "photo (2).png"]

    def test_candidates_without_extension(self) -> None:
        names = candidate_names("README")
        next(names)
        assert next(names) == "README (1)"


# ── 本地后端 ──────────────────────────────────────────────────────────

class TestLocalBlobStore:
    """测试本地文件系统后端。"""

    @pytest.mark.asyncio
    async def test_put_and_get(self, blobs: LocalBlobStore) -> None:
        key = await blobs.put("r1", "photo.png", b"one", "image/png")
        assert key == "rooms/r1/photo.png"
        assert await blobs.get_object(key) == b"one"
        assert await blobs.exists(key)

    @pytest.mark.asyncio
    async def test_collisions_never_overwrite(self, blobs: LocalBlobStore) -> None:
        first = await blobs.put("r1", "photo.png", b"one", "image/png")
        second = await blobs.put("r1", "photo.png", b"two", "image/png")
        third = await blobs.put("r1", "photo.png", b"three", "image/png")

        assert second == "rooms/r1/photo (1).png"
        assert third == "rooms/r1/photo (2).png"
        assert await blobs.get_object(first) == b"one"
        assert await blobs.get_object(second) == b"two"

    @pytest.mark.asyncio
    async def test_rooms_are_separate_namespaces(self, blobs: LocalBlobStore) -> None:
        a = await blobs.put("r1", "photo.png", b"a", "image/png")
        b = await blobs.put("r2", "photo.png", b"b", "image/png")
        assert a == "rooms/r1/photo.png"
        assert b == "rooms/r2/photo.png"

    @pytest.mark.asyncio
    async def test_exhausted_candidates(self, blobs: LocalBlobStore) -> None:
        blobs.max_attempts = 2
        await blobs.put("r1", "a.txt", b"1", "text/plain")
        await blobs.put("r1", "a.txt", b"2", "text/plain")
        with pytest.raises(StorageError):
            await blobs.put("r1", "a.txt", b"3", "text/plain")

    @pytest.mark.asyncio
    async def test_put_object_replaces(self, blobs: LocalBlobStore) -> None:
        await blobs.put_object("archives/r1/t.jsonl", b"v1", "application/x-ndjson")
        await blobs.put_object("archives/r1/t.jsonl", b"v2", "application/x-ndjson")
        assert await blobs.get_object("archives/r1/t.jsonl") == b"v2"

    def test_keys_cannot_escape_root(self, blobs: LocalBlobStore) -> None:
        for key in ("../outside.txt", "rooms/r1/../../../x", ""):
            with pytest.raises(NotFoundError):
                blobs.path_for(key)

    @pytest.mark.asyncio
    async def test_missing_object(self, blobs: LocalBlobStore) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await blobs.get_object("rooms/r1/nope.png")
        assert exc_info.value.reason is ErrorReason.MEDIA_NOT_FOUND
        assert not await blobs.exists("rooms/r1/nope.png")
        with pytest.raises(NotFoundError):
            await blobs.servable_reference("rooms/r1/nope.png")

    @pytest.mark.asyncio
    async def test_servable_reference_is_local_path(self, blobs: LocalBlobStore) -> None:
        key = await blobs.put("r1", "a.txt", b"hello", "text/plain")
        ref = await blobs.servable_reference(key)
        assert ref.url is None
        assert ref.path is not None and ref.path.read_bytes() == b"hello"


# ── S3 后端 ───────────────────────────────────────────────────────────

class TestS3BlobStore:
    """测试 S3 后端（Mock boto3 客户端）。"""

    @pytest.fixture()
    def client(self) -> MagicMock:
        client = MagicMock()
        client.head_object.side_effect = client_error("404")
        client.generate_presigned_url.return_value = "https://s3.example/signed"
        return client

    @pytest.fixture()
    def store(self, client: MagicMock) -> S3BlobStore:
        return S3BlobStore("bucket", client=client)

    @pytest.mark.asyncio
    async def test_put_uses_conditional_write(self, store: S3BlobStore, client: MagicMock) -> None:
        key = await store.put("r1", "a.png", b"x", "image/png")

        assert key == "rooms/r1/a.png"
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["IfNoneMatch"] == "*"
        assert kwargs["Bucket"] == "bucket"
        assert kwargs["ContentType"] == "image/png"

    @pytest.mark.asyncio
    async def test_existing_key_picks_next_name(self, store: S3BlobStore, client: MagicMock) -> None:
        def head(Bucket: str, Key: str) -> dict:
            if Key == "rooms/r1/a.png":
                return {}
            raise client_error("404")

        client.head_object.side_effect = head
        assert await store.put("r1", "a.png", b"x", "image/png") == "rooms/r1/a (1).png"

    @pytest.mark.asyncio
    async def test_precondition_failure_picks_next_name(self, store: S3BlobStore, client: MagicMock) -> None:
        client.put_object.side_effect = [client_error("PreconditionFailed", "PutObject"), {}]
        assert await store.put("r1", "a.png", b"x", "image/png") == "rooms/r1/a (1).png"
        assert client.put_object.call_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_storage_errors(self, store: S3BlobStore, client: MagicMock) -> None:
        client.put_object.side_effect = client_error("AccessDenied", "PutObject")
        with pytest.raises(StorageError):
            await store.put("r1", "a.png", b"x", "image/png")

        client.head_object.side_effect = client_error("500")
        with pytest.raises(StorageError):
            await store.exists("rooms/r1/a.png")

    @pytest.mark.asyncio
    async def test_presigned_reference(self, store: S3BlobStore, client: MagicMock) -> None:
        client.head_object.side_effect = None
        client.head_object.return_value = {}

        ref = await store.servable_reference("rooms/r1/a.png")

        assert ref.url == "https://s3.example/signed"
        assert ref.path is None
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "bucket", "Key": "rooms/r1/a.png"},
            ExpiresIn=60,
        )

    @pytest.mark.asyncio
    async def test_missing_reference(self, store: S3BlobStore, client: MagicMock) -> None:
        with pytest.raises(NotFoundError):
            await store.servable_reference("rooms/r1/a.png")
        client.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_object(self, store: S3BlobStore, client: MagicMock) -> None:
        body = MagicMock()
        body.read.return_value = b"payload"
        client.get_object.return_value = {"Body": body}
        assert await store.get_object("rooms/r1/a.png") == b"payload"

        client.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        with pytest.raises(NotFoundError):
            await store.get_object("rooms/r1/a.png")
