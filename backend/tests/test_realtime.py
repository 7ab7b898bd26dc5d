import inspect

import pytest
from fastapi import WebSocketDisconnect

from inventory_backend.api.v1 import notifications
from inventory_backend.models.audit import SecurityLog
from inventory_backend.models.notification import Notification

from conftest import PASSWORD, make_user

WS = "/api/v1/ws"


def _login(client, email):
    response = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return client.cookies.get("access_token")


def test_handshake_without_token_is_refused(client, runtime):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(WS):
            pass
    assert excinfo.value.code == 1008

    db = runtime.session_factory()
    try:
        events = [row.event for row in db.query(SecurityLog).all()]
    finally:
        db.close()
    assert "REALTIME_AUTH_FAILED" in events


def test_handshake_with_revoked_token_is_refused(client, db):
    make_user(db)
    token = _login(client, "user@example.com")
    assert client.post("/api/v1/auth/logout").status_code == 200

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"{WS}?token={token}"):
            pass
    assert excinfo.value.code == 1008


def test_fetch_and_mark_over_socket(client, runtime, db):
    user = make_user(db)
    user_id = user.id
    notification = Notification(type="TASK", message="Count aisle 4", recipient_id=user_id)
    db.add(notification)
    db.commit()
    notification_id = notification.id
    token = _login(client, "user@example.com")

    with client.websocket_connect(f"{WS}?token={token}") as ws:
        ws.send_json({"event": "get:notifications"})
        reply = ws.receive_json()
        assert reply["event"] == "notifications"
        assert [n["id"] for n in reply["data"]] == [notification_id]
        assert runtime.registry.is_online(user_id)

        ws.send_json({"event": "mark:read", "id": notification_id})
        ws.send_json({"event": "get:notifications"})
        assert ws.receive_json()["data"] == []

        ws.send_text("{not json")
        assert ws.receive_json()["event"] == "error"


def test_broadcast_reaches_open_socket(client, db):
    make_user(db, "manager@example.com", role="MANAGER")
    make_user(db, "staff@example.com")
    token = _login(client, "manager@example.com")

    with client.websocket_connect(f"{WS}?token={token}") as ws:
        response = client.post(
            "/api/v1/notifications/broadcast",
            json={"type": "SYSTEM", "message": "Warehouse closes early today"},
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"delivered": 2, "failed": []}

        frame = ws.receive_json()
        assert frame["event"] == "new:notification"
        assert frame["data"]["message"] == "Warehouse closes early today"


def test_staff_cannot_broadcast(client, db):
    make_user(db, "staff@example.com")
    _login(client, "staff@example.com")

    response = client.post(
        "/api/v1/notifications/broadcast",
        json={"type": "SYSTEM", "message": "Hello everyone"},
    )
    assert response.status_code == 403


def test_notification_rest_endpoints(client, db):
    user = make_user(db)
    for i in range(3):
        db.add(Notification(type="SYSTEM", message=f"Notice {i}", recipient_id=user.id))
    db.commit()
    _login(client, "user@example.com")

    page = client.get("/api/v1/notifications", params={"limit": 2}).json()
    assert page["count"] == 3
    assert page["pages"] == 2
    first_id = page["notifications"][0]["id"]

    read = client.put(f"/api/v1/notifications/{first_id}/read").json()
    assert read["read"] is True
    assert read["seen"] is True

    assert client.put("/api/v1/notifications/missing/seen").status_code == 404

    updated = client.put("/api/v1/notifications/mark-all-seen").json()
    assert updated["data"]["updated"] == 2
    assert client.get("/api/v1/notifications", params={"seen": False}).json()["count"] == 0


def test_only_broadcast_route_runs_on_the_event_loop():
    endpoints = {route.name: route.endpoint for route in notifications.router.routes}

    assert inspect.iscoroutinefunction(endpoints.pop("broadcast"))
    assert endpoints
    assert not any(inspect.iscoroutinefunction(endpoint) for endpoint in endpoints.values())
