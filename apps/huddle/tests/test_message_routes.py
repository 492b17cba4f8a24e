"""
Unit tests for message API routes.
Service functions are monkeypatched; identity comes from gateway headers.
"""

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from huddle.api.main import app
from huddle.services import message_service, read_receipt_service
from huddle.services.errors import ValidationError, NotFoundError

COACH_HEADERS = {"X-User-Id": "coach1", "X-User-Role": "coach"}
PLAYER_HEADERS = {"X-User-Id": "p1", "X-User-Role": "player"}


def _message(**overrides):
    message = {
        "id": 1,
        "type": "direct",
        "sender_id": "coach1",
        "recipient_id": "p1",
        "content": "See me after practice",
        "priority": "normal",
        "metadata": {},
        "status": "sent",
        "expires_at": None,
        "created_at": "2026-03-01T12:00:00+00:00",
        "updated_at": "2026-03-01T12:00:00+00:00",
    }
    message.update(overrides)
    return message


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


def test_missing_identity_is_unauthorized(client):
    response = client.get("/api/messages")
    assert response.status_code == 401


def test_unknown_role_is_unauthorized(client):
    response = client.get("/api/messages", headers={"X-User-Id": "x", "X-User-Role": "admin"})
    assert response.status_code == 401


def test_create_direct_message(client, monkeypatch):
    captured = {}

    async def fake_send_message(session, sender_id, type, recipient_id, content, **kwargs):
        captured.update(sender_id=sender_id, type=type, recipient_id=recipient_id, **kwargs)
        return _message(sender_id=sender_id, content=content, priority=kwargs["priority"])

    monkeypatch.setattr(message_service, "send_message", fake_send_message, raising=True)

    response = client.post(
        "/api/messages",
        json={"type": "direct", "recipient_id": "p1", "content": "See me after practice", "priority": "high"},
        headers=COACH_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["priority"] == "high"
    assert captured["sender_id"] == "coach1"
    assert captured["recipient_id"] == "p1"


def test_player_cannot_broadcast(client, monkeypatch):
    async def fake_send_message(*args, **kwargs):
        raise AssertionError("should not be called")

    monkeypatch.setattr(message_service, "send_message", fake_send_message, raising=True)

    response = client.post(
        "/api/messages", json={"type": "broadcast", "content": "Party at my place"}, headers=PLAYER_HEADERS
    )
    assert response.status_code == 403


def test_alert_messages_are_system_only(client):
    response = client.post(
        "/api/messages",
        json={"type": "alert", "recipient_id": "p1", "content": "Fake alert"},
        headers=COACH_HEADERS,
    )
    assert response.status_code == 403


def test_create_message_validation_error(client, monkeypatch):
    async def fake_send_message(*args, **kwargs):
        raise ValidationError("recipient_id", "recipient_id must be empty for broadcast messages")

    monkeypatch.setattr(message_service, "send_message", fake_send_message, raising=True)

    response = client.post(
        "/api/messages",
        json={"type": "broadcast", "recipient_id": "p1", "content": "Hi"},
        headers=COACH_HEADERS,
    )
    assert response.status_code == 400
    assert "recipient_id" in response.json()["detail"]


def test_list_messages(client, monkeypatch):
    async def fake_list(session, user_id, now=None, limit=None, offset=0, **filters):
        assert user_id == "p1"
        return [_message(is_read=False, read_at=None)]

    async def fake_count(session, user_id, now=None, **filters):
        return 3

    monkeypatch.setattr(message_service, "list_messages_for_user", fake_list, raising=True)
    monkeypatch.setattr(message_service, "count_messages_for_user", fake_count, raising=True)

    response = client.get("/api/messages?limit=1", headers=PLAYER_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["total_count"] == 3
    assert data["has_more"] is True
    assert data["messages"][0]["is_read"] is False


def test_unread_count(client, monkeypatch):
    async def fake_unread(session, user_id, now=None):
        return 2

    monkeypatch.setattr(read_receipt_service, "get_unread_count", fake_unread, raising=True)

    response = client.get("/api/messages/unread-count", headers=PLAYER_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"count": 2}


def test_unread_by_player_requires_coach(client):
    response = client.get("/api/messages/unread-by-player", headers=PLAYER_HEADERS)
    assert response.status_code == 403


def test_unread_by_player(client, monkeypatch):
    async def fake_counts(session, coach_id, now=None):
        assert coach_id == "coach1"
        return {"p1": 2, "p2": 1}

    monkeypatch.setattr(read_receipt_service, "get_unread_counts_by_player", fake_counts, raising=True)

    response = client.get("/api/messages/unread-by-player", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"counts": {"p1": 2, "p2": 1}, "total": 3}


def test_mark_read(client, monkeypatch):
    async def fake_get_for_user(session, message_id, user_id, now=None):
        return _message(id=message_id, is_read=False, read_at=None)

    async def fake_mark_read(session, message_id, user_id, device_info=None, now=None):
        return {
            "message_id": message_id,
            "user_id": user_id,
            "read_at": "2026-03-01T12:05:00+00:00",
            "device_info": device_info or {},
        }

    monkeypatch.setattr(message_service, "get_message_for_user", fake_get_for_user, raising=True)
    monkeypatch.setattr(read_receipt_service, "mark_read", fake_mark_read, raising=True)

    response = client.put(
        "/api/messages/5/read", json={"device_info": {"platform": "ios"}}, headers=PLAYER_HEADERS
    )

    assert response.status_code == 200
    assert response.json()["device_info"] == {"platform": "ios"}

    # Body is optional
    response = client.put("/api/messages/5/read", headers=PLAYER_HEADERS)
    assert response.status_code == 200


def test_mark_read_not_visible(client, monkeypatch):
    async def fake_get_for_user(session, message_id, user_id, now=None):
        raise NotFoundError("Message", message_id)

    monkeypatch.setattr(message_service, "get_message_for_user", fake_get_for_user, raising=True)

    response = client.put("/api/messages/99/read", headers=PLAYER_HEADERS)
    assert response.status_code == 404


def test_mark_all_read(client, monkeypatch):
    async def fake_mark_all(session, user_id, device_info=None, now=None):
        return 4

    monkeypatch.setattr(read_receipt_service, "mark_all_read", fake_mark_all, raising=True)

    response = client.put("/api/messages/mark-all-read", headers=PLAYER_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"success": True, "count": 4}


def test_read_receipts_sender_only(client, monkeypatch):
    async def fake_get_message(session, message_id):
        return _message(id=message_id, sender_id="coach1")

    async def fake_receipts(session, message_id):
        return [{"message_id": message_id, "user_id": "p1", "read_at": "2026-03-01T12:05:00+00:00", "device_info": {}}]

    monkeypatch.setattr(message_service, "get_message", fake_get_message, raising=True)
    monkeypatch.setattr(read_receipt_service, "get_read_receipts", fake_receipts, raising=True)

    assert client.get("/api/messages/1/reads", headers=PLAYER_HEADERS).status_code == 403

    response = client.get("/api/messages/1/reads", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()[0]["user_id"] == "p1"


def test_service_error_returns_500(client, monkeypatch):
    async def fake_unread(session, user_id, now=None):
        raise RuntimeError("database went away")

    monkeypatch.setattr(read_receipt_service, "get_unread_count", fake_unread, raising=True)

    response = client.get("/api/messages/unread-count", headers=PLAYER_HEADERS)
    assert response.status_code == 500


def test_list_messages_passes_filters(client, monkeypatch):
    captured = {}

    async def fake_list(session, user_id, now=None, limit=None, offset=0, **filters):
        captured["list"] = filters
        return []

    async def fake_count(session, user_id, now=None, **filters):
        captured["count"] = filters
        return 0

    monkeypatch.setattr(message_service, "list_messages_for_user", fake_list, raising=True)
    monkeypatch.setattr(message_service, "count_messages_for_user", fake_count, raising=True)

    response = client.get(
        "/api/messages?type=direct&priority=high&since=2026-03-01T00:00:00Z",
        headers=PLAYER_HEADERS,
    )

    assert response.status_code == 200
    assert captured["list"] == captured["count"]
    assert captured["list"]["type"] == "direct"
    assert captured["list"]["priority"] == "high"
    assert captured["list"]["status"] is None
    assert captured["list"]["since"] == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert captured["list"]["until"] is None


def test_list_messages_invalid_filter_is_400(client, monkeypatch):
    async def fake_list(session, user_id, now=None, limit=None, offset=0, **filters):
        raise ValidationError("type", "type must be one of ['alert', 'broadcast', 'direct']")

    monkeypatch.setattr(message_service, "list_messages_for_user", fake_list, raising=True)

    response = client.get("/api/messages?type=memo", headers=PLAYER_HEADERS)
    assert response.status_code == 400


def test_websocket_requires_identity_headers(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/ws/messages") as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 1008


def test_websocket_ignores_user_id_query_param(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/ws/messages?user_id=p1") as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 1008


def test_websocket_rejects_unknown_role(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(
            "/api/ws/messages", headers={"X-User-Id": "p1", "X-User-Role": "admin"}
        ) as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 1008


def test_websocket_ping_pong(client):
    with client.websocket_connect("/api/ws/messages", headers=PLAYER_HEADERS) as websocket:
        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"
