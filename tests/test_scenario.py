"""
tests.test_scenario
~~~~~~~~~~~~~~~~~~~

完整生命周期：建房 → 两人入房 → 第三人被拒 → 聊天 → 全员离开 →
宽限期后归档 → 解密归档核对顺序 → 房间不可再加入。
"""
from __future__ import annotations

import asyncio

import pytest

from shadowrooms.core.errors import AuthError, ConflictError, ErrorReason, NotFoundError
from shadowrooms.services.access import AccessControl
from shadowrooms.services.registry import RoomRegistry

from conftest import GRACE, FakeConnection


@pytest.mark.asyncio
async def test_room_lifecycle(access: AccessControl, registry: RoomRegistry) -> None:
    room = await registry.create_room("s3cret!", 2)

    # ── 入房 ──
    alice_grant = await access.join(room.id, "s3cret!", "Alice")
    alice = FakeConnection()
    alice_session = await registry.connect(room.id, alice, access.authenticate(alice_grant.token, room.id))

    bob_grant = await access.join(room.id, "s3cret!", "Bob")
    bob = FakeConnection()
    bob_session = await registry.connect(room.id, bob, access.authenticate(bob_grant.token, room.id))

    with pytest.raises(ConflictError) as exc_info:
        await access.join(room.id, "s3cret!", "Carol")
    assert exc_info.value.reason is ErrorReason.ROOM_FULL

    # ── 聊天 ──
    await registry.post_message(room.id, alice_session.id, "hi")
    await registry.post_message(room.id, bob_session.id, "hello")
    assert [m["text"] for m in bob.of_type("message")] == ["hi", "hello"]
    assert [m["sender"] for m in alice.of_type("message")] == ["Alice", "Bob"]

    # ── 全员离开，宽限期后归档 ──
    await registry.disconnect(room.id, alice_session.id)
    await registry.disconnect(room.id, bob_session.id)
    await asyncio.sleep(GRACE * 4)
    await registry.wait_archived()

    stored = await registry.repo.get_room(room.id)
    assert stored.archived_at is not None
    rows = await registry.archiver.read_transcript(stored.archive_location)
    assert [row["content"] for row in rows] == ["hi", "hello"]
    assert [row["senderName"] for row in rows] == ["Alice", "Bob"]

    record = await registry.repo.get_latest_archive(room.id)
    assert {p["displayName"] for p in record.participants} == {"Alice", "Bob"}

    with pytest.raises(ConflictError) as exc_info:
        await access.join(room.id, "s3cret!")
    assert exc_info.value.reason is ErrorReason.ROOM_ARCHIVED


@pytest.mark.asyncio
async def test_magic_links_stay_in_their_room(access: AccessControl, registry: RoomRegistry) -> None:
    first = await registry.create_room("password-one", 2)
    second = await registry.create_room("password-two", 2)

    assert await registry.resolve_magic_token(first.magic_token) == first.id
    assert await registry.resolve_magic_token(second.magic_token) == second.id
    with pytest.raises(NotFoundError):
        await registry.resolve_magic_token(first.magic_token + "x")

    # 另一个房间的密码无效
    grant = await access.join(second.id, "password-two")
    assert grant.room_id == second.id
    with pytest.raises(AuthError):
        await access.join(first.id, "password-two")
