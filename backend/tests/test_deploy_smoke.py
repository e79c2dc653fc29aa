from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from app.config import get_settings
from app.main import app, websocket_stream
from app.schemas import NotificationPriority, NotificationType
from app.services.notification_store import NotificationStore
from app.ws_manager import WSManager


@pytest.fixture
def offline_env(monkeypatch):
    monkeypatch.setenv("UPSTREAM_WS_ENABLED", "false")
    monkeypatch.setenv("ALERT_POLLING_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_health_without_upstream(offline_env):
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["upstream"] == {"enabled": False}
    assert payload["alerts"] == {"enabled": False}


def test_stream_socket_joins_and_answers_ping(offline_env):
    with TestClient(app) as client:
        app.state.notification_store.create(
            type=NotificationType.INFO,
            priority=NotificationPriority.NORMAL,
            title="Hello",
            message="World",
        )

        with client.websocket_connect("/ws/stream?channels=notifications,system") as websocket:
            joined = websocket.receive_json()
            assert joined["type"] == "socket_join"
            assert joined["data"]["channels"] == ["notifications", "system"]

            stats = websocket.receive_json()
            assert stats["type"] == "notification_stats"
            assert stats["data"]["unread"] == 1

            websocket.send_text("ping")
            assert websocket.receive_json()["type"] == "pong"

            websocket.send_text('{"type": "mark_all_read"}')
            assert websocket.receive_json()["data"]["unread"] == 0


def test_settings_reject_bad_upstream_url(monkeypatch):
    monkeypatch.setenv("UPSTREAM_WS_URL", "http://not-a-socket")
    get_settings.cache_clear()
    try:
        with pytest.raises(RuntimeError, match="UPSTREAM_WS_URL"):
            get_settings()
    finally:
        get_settings.cache_clear()


def test_settings_require_token_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.delenv("API_AUTH_TOKEN", raising=False)
    get_settings.cache_clear()
    try:
        with pytest.raises(RuntimeError, match="API_AUTH_TOKEN"):
            get_settings()
    finally:
        get_settings.cache_clear()


def test_settings_read_reconnect_tuning(monkeypatch):
    monkeypatch.setenv("WS_RECONNECT_BASE_DELAY_SECONDS", "2.5")
    monkeypatch.setenv("WS_MAX_RECONNECT_ATTEMPTS", "not-a-number")
    monkeypatch.setenv("API_BASE_URL", "https://backend.test/api/")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()
    assert settings.ws_reconnect_base_delay_seconds == 2.5
    assert settings.ws_max_reconnect_attempts == 5
    assert settings.api_base_url == "https://backend.test/api"


def test_stream_socket_dropped_before_join_is_unregistered():
    class _DroppingSocket:
        def __init__(self, state) -> None:
            self.query_params = {"channels": "notifications"}
            self.app = SimpleNamespace(state=state)
            self.accepted = False

        async def accept(self) -> None:
            self.accepted = True

        async def send_json(self, _payload) -> None:
            raise WebSocketDisconnect(code=1006)

        async def receive_text(self) -> str:  # pragma: no cover - never reached
            raise AssertionError("receive_text should not be called")

    manager = WSManager()
    state = SimpleNamespace(ws_manager=manager, notification_store=NotificationStore())
    socket = _DroppingSocket(state)

    asyncio.run(websocket_stream(socket))

    assert socket.accepted is True
    assert manager.connection_count == 0
    assert manager.channel_counts() == {}
