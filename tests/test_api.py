"""HTTP and websocket surface of the notification service."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakePushProvider, device_token, make_token
from dealerhub.common.db import SessionLocal
from dealerhub.services.notification import main
from dealerhub.services.notification.models import NotificationCategory


class AllowN:
    def __init__(self, n: int) -> None:
        self.remaining = n

    def allow(self, key: str) -> bool:
        self.remaining -= 1
        return self.remaining >= 0


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "guest_limiter", AllowN(100))
    return TestClient(main.app)


def _auth(principal_id: str, role: str = "USER") -> dict:
    return {"Authorization": f"Bearer {make_token(principal_id, role=role)}"}


def _seed(user_id: str, count: int = 1) -> list[str]:
    with SessionLocal() as db:
        records = main.inbox.add_user_notifications(
            db, [user_id] * count, NotificationCategory.GENERAL, "Hello", "Welcome"
        )
        db.commit()
        return [record.id for record in records]


def test_inbox_requires_token(client):
    assert client.get("/notifications").status_code == 401
    assert client.get("/notifications", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_list_and_mark_read(client, make_user):
    user = make_user()
    first, _ = _seed(user, count=2)

    body = client.get("/notifications", headers=_auth(user)).json()
    assert body["total"] == 2
    assert body["unread_count"] == 2
    assert {item["type"] for item in body["notifications"]} == {"GENERAL"}

    resp = client.put(f"/notifications/{first}/read", headers=_auth(user))
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True

    assert client.put("/notifications/read-all", headers=_auth(user)).json() == {"count": 1}


def test_other_users_notification_is_forbidden(client, make_user):
    owner, intruder = make_user(), make_user()
    (notification_id,) = _seed(owner)

    assert client.put(f"/notifications/{notification_id}/read", headers=_auth(intruder)).status_code == 403
    assert client.delete(f"/notifications/{notification_id}", headers=_auth(intruder)).status_code == 403
    assert client.put("/notifications/missing/read", headers=_auth(owner)).status_code == 404
    assert client.delete(f"/notifications/{notification_id}", headers=_auth(owner)).status_code == 204


def test_device_target_registration(client, make_user):
    user = make_user()

    short = client.put("/users/me/device-target", json={"fcm_token": "short"}, headers=_auth(user))
    assert short.status_code == 422

    resp = client.put(
        "/users/me/device-target", json={"fcm_token": device_token("phone"), "platform": "ios"}, headers=_auth(user)
    )
    assert resp.status_code == 200
    assert main.devices.identifiers_for([user]) == [device_token("phone")]

    assert client.delete("/users/me/device-target", headers=_auth(user)).json() == {"removed": True}


def test_device_target_for_unknown_user(client):
    resp = client.put("/users/me/device-target", json={"fcm_token": device_token("phone")}, headers=_auth("ghost"))
    assert resp.status_code == 404


def test_guest_registration_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(main, "guest_limiter", AllowN(1))

    assert client.post("/device-token", json={"fcm_token": device_token("guest")}).status_code == 200
    assert client.post("/device-token", json={"fcm_token": device_token("guest-2")}).status_code == 429
    assert main.devices.anonymous_identifiers() == [device_token("guest")]


def test_admin_endpoints_reject_end_users(client, make_user):
    user = make_user()

    assert client.get("/admin/alerts", headers=_auth(user)).status_code == 403
    resp = client.post("/admin/notifications/broadcast", json={"title": "x", "body": "y"}, headers=_auth(user))
    assert resp.status_code == 403


def test_broadcast_reports_push_outcomes(client, monkeypatch, make_user):
    monkeypatch.setattr(main.gateway, "provider", FakePushProvider(invalid={device_token("guest")}))
    admin = make_user(role="ADMIN")
    users = [make_user() for _ in range(2)]
    main.devices.register_for_principal(users[0], device_token("u0"))
    main.devices.register_anonymous(device_token("guest"))

    resp = client.post(
        "/admin/notifications/broadcast",
        json={"title": "Open day", "body": "Come visit", "type": "OFFER"},
        headers=_auth(admin, role="ADMIN"),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["records"] == 2
    assert body["sent"] == 1
    assert body["failed"] == 1
    assert body["invalid_targets_removed"] == 1


def test_direct_send_reports_unknown_users(client, make_user):
    admin = make_user(role="SUPER_ADMIN")
    user = make_user()

    resp = client.post(
        "/admin/notifications/send",
        json={"title": "Recall", "body": "Book an inspection", "user_ids": [user, "ghost"]},
        headers=_auth(admin, role="SUPER_ADMIN"),
    )

    assert resp.status_code == 200
    assert resp.json()["records"] == 1
    assert resp.json()["unknown_recipients"] == ["ghost"]


def test_admin_alert_lifecycle(client, make_user):
    admin = make_user(role="ADMIN")
    with SessionLocal() as db:
        alert = main.inbox.add_admin_alert(db, NotificationCategory.BREAKDOWN, "Breakdown", "Help needed")
        db.commit()
    headers = _auth(admin, role="ADMIN")

    assert client.get("/admin/alerts/unread-count", headers=headers).json() == {"unread_count": 1}
    assert client.put(f"/admin/alerts/{alert.id}/read", headers=headers).json()["is_read"] is True
    assert client.get("/admin/alerts", headers=headers).json()["unread_count"] == 0
    assert client.put("/admin/alerts/read-all", headers=headers).json() == {"count": 0}


def test_websocket_rejects_end_user(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/admin?token={make_token('u1', role='USER')}"):
            pass
    assert exc_info.value.code == 1008


def test_websocket_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/admin"):
            pass
    assert exc_info.value.code == 1008


def test_websocket_operator_session(client):
    with client.websocket_connect(f"/ws/admin?token={make_token('a1', role='ADMIN')}") as ws:
        connected = ws.receive_json()
        assert connected["event"] == "admin:connected"
        assert connected["data"]["userId"] == "a1"
        assert main.registry.is_connected("a1")

        ws.send_json({"event": "admin:ping"})
        assert ws.receive_json() == {"event": "admin:pong"}


def test_health_and_metrics(client):
    health = client.get("/health").json()
    assert health["ok"] is True
    assert "push_enabled" in health

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "notifications_dispatched_total" in metrics.text
