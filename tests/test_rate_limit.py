"""
tests.test_rate_limit
~~~~~~~~~~~~~~~~~~~~~

HTTP（slowapi）与 WebSocket 限流测试。
"""
import time

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from shadowrooms.core.rate_limit import WebSocketRateLimiter
from shadowrooms.main import rate_limit_handler


def test_websocket_limiter_per_session() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=0.2)

    assert limiter.is_allowed("session-1") is True
    assert limiter.is_allowed("session-1") is False
    assert limiter.is_allowed("session-2") is True

    time.sleep(0.25)
    assert limiter.is_allowed("session-1") is True

    limiter.forget("session-1")
    assert len(limiter) == 1
    assert limiter.is_allowed("session-1") is True


def test_rejected_message_does_not_extend_window() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=0.2)
    assert limiter.is_allowed("s") is True
    time.sleep(0.12)
    assert limiter.is_allowed("s") is False
    time.sleep(0.12)
    assert limiter.is_allowed("s") is True


def test_zero_interval_never_blocks() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=0)
    assert all(limiter.is_allowed("s") for _ in range(10))


def test_http_rate_limit_returns_api_response() -> None:
    """超过限额时返回 429 与统一应答体。"""
    limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
    app = FastAPI()
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    @app.get("/ping")
    @limiter.limit("2/minute")
    async def ping(request: Request):
        return {"pong": True}

    client = TestClient(app)
    assert client.get("/ping").status_code == 200
    assert client.get("/ping").status_code == 200

    response = client.get("/ping")
    assert response.status_code == 429
    body = response.json()
    assert body["code"] == 429
    assert body["msg"] == "RATE_LIMITED"
    assert body["data"]["reason"] == "RATE_LIMITED"
