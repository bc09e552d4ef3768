"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures：真实的 SQLite（``tmp_path``）与本地对象存储，
低成本的 argon2 参数，以及记录收到事件的假 WebSocket 连接。
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
TEST_KEY_HEX: str = bytes(range(32)).hex()
TEST_SESSION_SECRET: str = "test-session-secret-0123456789abcdef"

os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("SESSION_SECRET", TEST_SESSION_SECRET)
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from shadowrooms.core.config import Settings  # noqa: E402
from shadowrooms.core.crypto import TranscriptCipher  # noqa: E402
from shadowrooms.core.security import PasswordHasher, SessionClaims, SessionTokens  # noqa: E402
from shadowrooms.db.adapter import SQLiteAdapter  # noqa: E402
from shadowrooms.db.records import Room, utcnow  # noqa: E402
from shadowrooms.db.room_repository import RoomRepository  # noqa: E402
from shadowrooms.db.schema import SCHEMA  # noqa: E402
from shadowrooms.services.access import AccessControl  # noqa: E402
from shadowrooms.services.archival import ArchivalEngine  # noqa: E402
from shadowrooms.services.registry import RoomRegistry  # noqa: E402
from shadowrooms.storage.blob_store import LocalBlobStore  # noqa: E402

GRACE: float = 0.05


# ── 假连接 ────────────────────────────────────────────────────────────

class FakeConnection:
    """记录所有收到的事件，代替 ``WebSocket``。"""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        self.events.append(data)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("type") == event_type]


class BrokenConnection(FakeConnection):
    """发送总是失败的连接（模拟已断开的客户端）。"""

    async def send_json(self, data: Any) -> None:
        raise RuntimeError("connection closed")


# ── 基础组件 ──────────────────────────────────────────────────────────

def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    """为单个测试构造独立配置（数据库与对象存储都落在 ``tmp_path``）。"""
    values: dict[str, Any] = {
        "ENVIRONMENT": "test",
        "SQLITE_PATH": str(tmp_path / "shadowrooms.db"),
        "MEDIA_ROOT": str(tmp_path / "blobs"),
        "ENCRYPTION_KEY": TEST_KEY_HEX,
        "SESSION_SECRET": TEST_SESSION_SECRET,
        "GRACE_PERIOD_SECONDS": GRACE,
        "WS_RATE_LIMIT_INTERVAL": 0.0,
        "RATE_LIMIT_ENABLED": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_room(room_id: str = "room-1", capacity: int = 2, magic_token: str | None = None) -> Room:
    return Room(
        id=room_id,
        password_hash="$argon2id$placeholder",
        magic_token=magic_token or f"token-{room_id}",
        capacity=capacity,
        created_at=utcnow(),
        media_prefix=f"rooms/{room_id}",
    )


def claims_for(tokens: SessionTokens, room_id: str, name: str | None = None) -> SessionClaims:
    return tokens.decode(tokens.issue(room_id, name))


@pytest.fixture()
def settings_for_test(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def cipher() -> TranscriptCipher:
    return TranscriptCipher(bytes.fromhex(TEST_KEY_HEX))


@pytest.fixture()
def hasher() -> PasswordHasher:
    """低成本参数，仅用于测试。"""
    return cheap_hasher()


@pytest.fixture()
def tokens() -> SessionTokens:
    return SessionTokens(TEST_SESSION_SECRET, ttl_seconds=7200)


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    adapter = SQLiteAdapter(str(tmp_path / "test.db"))
    await adapter.connect()
    await adapter.execute_script(SCHEMA)
    yield adapter
    await adapter.close()


@pytest.fixture()
def repo(db: SQLiteAdapter, cipher: TranscriptCipher) -> RoomRepository:
    return RoomRepository(db, cipher)


@pytest.fixture()
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def archiver(repo: RoomRepository, blobs: LocalBlobStore, cipher: TranscriptCipher) -> ArchivalEngine:
    return ArchivalEngine(repo, blobs, cipher)


@pytest_asyncio.fixture()
async def registry(
    repo: RoomRepository,
    blobs: LocalBlobStore,
    archiver: ArchivalEngine,
    hasher: PasswordHasher,
    settings_for_test: Settings,
):
    reg = RoomRegistry(repo, blobs, archiver, hasher, settings_for_test, grace_period=GRACE)
    yield reg
    await reg.close()


@pytest.fixture()
def access(registry: RoomRegistry, hasher: PasswordHasher, tokens: SessionTokens) -> AccessControl:
    return AccessControl(registry, hasher, tokens)


# ── 应用级 fixture ────────────────────────────────────────────────────

def cheap_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8 * 1024, parallelism=1)


@pytest.fixture()
def client(tmp_path: Path):
    """运行完整 lifespan 的 ``TestClient``（独立的数据库与对象存储）。"""
    from fastapi.testclient import TestClient

    from shadowrooms.main import create_app

    app = create_app(make_settings(tmp_path), password_hasher=cheap_hasher())
    with TestClient(app) as test_client:
        yield test_client
