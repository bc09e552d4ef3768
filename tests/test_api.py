"""
tests.test_api
~~~~~~~~~~~~~~

REST 接口测试：通过 ``TestClient`` 运行完整的 lifespan。
"""
from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

PASSWORD = "s3cret!"


def create_room(client: TestClient, capacity: int | None = 2) -> dict[str, Any]:
    resp = client.post("/api/rooms", json={"password": PASSWORD, "capacity": capacity})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def join(client: TestClient, room_id: str, display_name: str | None = None) -> str:
    resp = client.post(
        f"/api/rooms/{room_id}/join",
        json={"password": PASSWORD, "displayName": display_name},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["sessionToken"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestSystem:
    """测试系统接口与中间件。"""

    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["environment"] == "test"
        assert body["active_rooms"] == 0

    def test_request_id_is_echoed(self, client: TestClient) -> None:
        resp = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert client.get("/health").headers["X-Request-ID"]


class TestRooms:
    """测试建房、解析与入房接口。"""

    def test_create_room(self, client: TestClient) -> None:
        resp = client.post("/api/rooms", json={"password": PASSWORD, "capacity": 2})

        body = resp.json()
        assert body["code"] == 200
        assert body["msg"] == "success"
        data = body["data"]
        assert data["roomId"]
        assert data["magicLink"] == f"http://testserver/r/{data['magicToken']}"

        rooms = client.get("/api/rooms").json()["data"]
        assert [r["roomId"] for r in rooms] == [data["roomId"]]
        assert rooms[0]["onlineCount"] == 0
        assert rooms[0]["phase"] == "idle"

    def test_invalid_capacity(self, client: TestClient) -> None:
        resp = client.post("/api/rooms", json={"password": PASSWORD, "capacity": 1})
        assert resp.status_code == 400
        body = resp.json()
        assert body["msg"] == "INVALID_CAPACITY"
        assert body["data"]["reason"] == "INVALID_CAPACITY"
        assert client.get("/api/rooms").json()["data"] == []

    def test_short_password(self, client: TestClient) -> None:
        resp = client.post("/api/rooms", json={"password": "abc"})
        assert resp.status_code == 400
        assert resp.json()["msg"] == "INVALID_PASSWORD_LENGTH"

    def test_resolve(self, client: TestClient) -> None:
        room = create_room(client)

        resp = client.get(f"/api/resolve/{room['magicToken']}")
        assert resp.json()["data"] == {"roomId": room["roomId"]}

        resp = client.get("/api/resolve/not-a-token")
        assert resp.status_code == 404
        assert resp.json()["msg"] == "ROOM_NOT_FOUND"

    def test_join(self, client: TestClient) -> None:
        room = create_room(client)

        resp = client.post(f"/api/rooms/{room['roomId']}/join", json={"password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["msg"] == "INVALID_PASSWORD"

        resp = client.post(
            f"/api/rooms/{room['roomId']}/join",
            json={"password": PASSWORD, "displayName": "Alice"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["roomId"] == room["roomId"]
        assert data["displayName"] == "Alice"
        assert data["sessionToken"]
        assert data["expiresAt"]

    def test_join_unknown_room(self, client: TestClient) -> None:
        resp = client.post("/api/rooms/missing/join", json={"password": PASSWORD})
        assert resp.status_code == 404


class TestMedia:
    """测试媒体上传与下载接口。"""

    def test_upload_requires_session(self, client: TestClient) -> None:
        room = create_room(client)
        resp = client.post(
            f"/api/rooms/{room['roomId']}/media",
            files={"file": ("photo.png", b"abc", "image/png")},
        )
        assert resp.status_code == 401
        assert resp.json()["msg"] == "INVALID_SESSION"

    def test_upload_with_token_for_other_room(self, client: TestClient) -> None:
        a = create_room(client)
        b = create_room(client)
        token = join(client, a["roomId"])

        resp = client.post(
            f"/api/rooms/{b['roomId']}/media",
            files={"file": ("photo.png", b"abc", "image/png")},
            headers=bearer(token),
        )
        assert resp.status_code == 403
        assert resp.json()["msg"] == "ROOM_MISMATCH"

    def test_upload_and_fetch(self, client: TestClient) -> None:
        room = create_room(client)
        room_id = room["roomId"]
        token = join(client, room_id)

        first = client.post(
            f"/api/rooms/{room_id}/media",
            files={"file": ("photo.png", b"one", "image/png")},
            headers=bearer(token),
        ).json()["data"]
        second = client.post(
            f"/api/rooms/{room_id}/media",
            files={"file": ("photo.png", b"two", "image/png")},
            headers=bearer(token),
        ).json()["data"]

        assert first == {
            "storageKey": f"rooms/{room_id}/photo.png",
            "fileName": "photo.png",
            "mimeType": "image/png",
            "sizeBytes": 3,
        }
        assert second["fileName"] == "photo (1).png"

        resp = client.get(f"/api/rooms/{room_id}/media/photo.png")
        assert resp.status_code == 200
        assert resp.content == b"one"
        assert resp.headers["content-type"].startswith("image/png")

        resp = client.get(f"/api/rooms/{room_id}/media/photo%20%281%29.png")
        assert resp.content == b"two"

    def test_empty_upload(self, client: TestClient) -> None:
        room = create_room(client)
        token = join(client, room["roomId"])
        resp = client.post(
            f"/api/rooms/{room['roomId']}/media",
            files={"file": ("empty.txt", b"", "text/plain")},
            headers=bearer(token),
        )
        assert resp.status_code == 400
        assert resp.json()["msg"] == "EMPTY_UPLOAD"

    def test_fetch_missing_media(self, client: TestClient) -> None:
        room = create_room(client)
        resp = client.get(f"/api/rooms/{room['roomId']}/media/nothing.png")
        assert resp.status_code == 404
        assert resp.json()["msg"] == "MEDIA_NOT_FOUND"

    def test_media_is_scoped_to_room(self, client: TestClient) -> None:
        a = create_room(client)
        b = create_room(client)
        token = join(client, a["roomId"])
        client.post(
            f"/api/rooms/{a['roomId']}/media",
            files={"file": ("secret.png", b"x", "image/png")},
            headers=bearer(token),
        )

        resp = client.get(f"/api/rooms/{b['roomId']}/media/secret.png")
        assert resp.status_code == 404
