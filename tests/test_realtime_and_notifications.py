from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from medmarket.main import create_app
from medmarket.models.appointment import Appointment
from medmarket.models.notification import Notification
from medmarket.realtime.channels import ChannelManager, parse_channel_filter
from medmarket.services.table_registry import Caller


class FakeSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)


# ============================================================================
# Channels
# ============================================================================

def test_parse_channel_filter():
    assert parse_channel_filter(None) is None
    assert parse_channel_filter("user_id=eq.7") == ("user_id", "7")
    with pytest.raises(ValueError, match="Only eq filters"):
        parse_channel_filter("user_id=gt.7")
    with pytest.raises(ValueError, match="Invalid filter"):
        parse_channel_filter("user_id")


async def test_publish_respects_row_visibility_and_filters():
    manager = ChannelManager()
    owner, stranger, admin, filtered = FakeSocket(), FakeSocket(), FakeSocket(), FakeSocket()
    manager.subscribe(owner, Caller(user_id=1, user_type="patient"), "notifications")
    manager.subscribe(stranger, Caller(user_id=2, user_type="patient"), "notifications")
    manager.subscribe(admin, Caller(user_id=3, user_type="admin"), "notifications")
    manager.subscribe(filtered, Caller(user_id=1, user_type="patient"), "notifications", "is_read=eq.true")

    row = {"id": 10, "user_id": 1, "title": "Hello", "is_read": False}
    delivered = await manager.publish("notifications", "INSERT", new=row)

    assert delivered == 2
    assert owner.sent == [{"type": "change", "table": "notifications", "eventType": "INSERT", "new": row, "old": None}]
    assert stranger.sent == []
    assert len(admin.sent) == 1
    assert filtered.sent == []

    # deletes are matched against the old row
    await manager.publish("notifications", "DELETE", old={**row, "is_read": True})
    assert len(filtered.sent) == 1


async def test_publish_hides_columns_and_drops_dead_sockets():
    manager = ChannelManager()
    alive, dead = FakeSocket(), FakeSocket(broken=True)
    manager.subscribe(alive, Caller(user_id=5, user_type="patient"), "profiles")
    manager.subscribe(dead, Caller(user_id=5, user_type="patient"), "profiles")

    await manager.publish("profiles", "UPDATE", new={"id": 5, "email": "a@b.c", "password_hash": "x"})
    assert alive.sent[0]["new"] == {"id": 5, "email": "a@b.c"}
    assert manager.subscriber_count("profiles") == 1

    manager.disconnect(alive)
    assert manager.subscriber_count() == 0


def test_subscribe_unknown_table():
    manager = ChannelManager()
    with pytest.raises(ValueError, match="Unknown table: nope"):
        manager.subscribe(FakeSocket(), Caller(user_id=1, user_type="patient"), "nope")


def test_realtime_socket_protocol(db_session, builders):
    user = builders.user(db_session)
    token = builders.headers(db_session, user)["Authorization"].split(" ", 1)[1]
    client = TestClient(create_app())

    with client.websocket_connect(f"/realtime?token={token}") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        ws.send_json({"type": "subscribe", "table": "notifications", "filter": f"user_id=eq.{user.id}"})
        assert ws.receive_json() == {"type": "subscribed", "table": "notifications", "filter": f"user_id=eq.{user.id}"}

        ws.send_json({"type": "subscribe", "table": "nope"})
        assert ws.receive_json() == {"type": "error", "detail": "Unknown table: nope"}

        ws.send_json({"type": "unsubscribe", "table": "notifications"})
        assert ws.receive_json() == {"type": "unsubscribed", "table": "notifications"}

        ws.send_json({"type": "shout"})
        assert ws.receive_json()["detail"] == "Unknown message type"


def test_realtime_socket_survives_malformed_frames(db_session, builders):
    user = builders.user(db_session)
    token = builders.headers(db_session, user)["Authorization"].split(" ", 1)[1]
    client = TestClient(create_app())

    with client.websocket_connect(f"/realtime?token={token}") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "detail": "Invalid JSON"}

        ws.send_text('{"type": "ping"')
        assert ws.receive_json() == {"type": "error", "detail": "Invalid JSON"}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_realtime_rejects_bad_token():
    client = TestClient(create_app())
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/realtime?token=bogus") as ws:
            ws.receive_json()


# ============================================================================
# Notifications
# ============================================================================

def test_notification_task_creates_in_app_row(db_session, builders):
    from medmarket.tasks.notification_tasks import send_notification_task

    user = builders.user(db_session)
    result = send_notification_task.apply(kwargs={
        "user_id": user.id,
        "notification_type": "appointment_reminder",
        "title": "Tomorrow",
        "body": "See you at 10:00",
        "channels": ["in_app"],
    })
    notification = db_session.get(Notification, result.get())
    assert notification.user_id == user.id
    assert notification.is_read is False


@pytest.mark.asyncio
async def test_notification_inbox(async_client, db_session, builders):
    user = builders.user(db_session)
    other = builders.user(db_session)
    headers = builders.headers(db_session, user)
    for title in ("One", "Two"):
        db_session.add(Notification(user_id=user.id, notification_type="info", title=title, body="b", is_read=False))
    db_session.add(Notification(user_id=other.id, notification_type="info", title="Theirs", body="b", is_read=False))
    db_session.commit()

    resp = await async_client.get("/notifications", headers=headers)
    data = resp.json()["data"]
    assert data["unread_count"] == 2
    assert {n["title"] for n in data["items"]} == {"One", "Two"}

    first = data["items"][0]["id"]
    resp = await async_client.post(f"/notifications/{first}/read", headers=headers)
    assert resp.json()["data"]["is_read"] is True
    assert resp.json()["data"]["read_at"] is not None

    resp = await async_client.get("/notifications?unread_only=true", headers=headers)
    assert resp.json()["data"]["unread_count"] == 1
    assert len(resp.json()["data"]["items"]) == 1

    theirs = db_session.query(Notification).filter(Notification.user_id == other.id).one()
    resp = await async_client.post(f"/notifications/{theirs.id}/read", headers=headers)
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Notification not found"}


# ============================================================================
# Reviews
# ============================================================================

@pytest.mark.asyncio
async def test_reviews_require_completed_appointment(async_client, db_session, builders):
    patient = builders.user(db_session)
    specialist = builders.specialist(db_session)
    headers = builders.headers(db_session, patient)
    done = Appointment(
        patient_id=patient.id, specialist_id=specialist.id,
        scheduled_at=datetime.utcnow() - timedelta(days=2), status="completed",
    )
    upcoming = Appointment(
        patient_id=patient.id, specialist_id=specialist.id,
        scheduled_at=datetime.utcnow() + timedelta(days=2), status="confirmed",
    )
    db_session.add_all([done, upcoming])
    db_session.commit()

    resp = await async_client.post("/reviews", json={"appointment_id": upcoming.id, "rating": 5}, headers=headers)
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Only completed appointments can be reviewed"}

    resp = await async_client.post(
        "/reviews", json={"appointment_id": done.id, "rating": 4, "comment": "Thorough"}, headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["specialist_id"] == specialist.id

    resp = await async_client.post("/reviews", json={"appointment_id": done.id, "rating": 5}, headers=headers)
    assert resp.status_code == 409

    stranger = builders.headers(db_session, builders.user(db_session))
    resp = await async_client.post("/reviews", json={"appointment_id": done.id, "rating": 1}, headers=stranger)
    assert resp.status_code == 404

    resp = await async_client.post(
        "/reviews", json={"appointment_id": done.id, "rating": 1},
        headers=builders.headers(db_session, specialist.user),
    )
    assert resp.status_code == 403

    resp = await async_client.get(f"/specialists/{specialist.id}/reviews")
    body = resp.json()
    assert body["total"] == 1
    assert body["average_rating"] == 4.0

    db_session.refresh(specialist)
    assert specialist.average_rating == 4.0
    assert specialist.total_reviews == 1


# ============================================================================
# Error envelope
# ============================================================================

@pytest.mark.asyncio
async def test_error_envelope(async_client, db_session, builders):
    headers = builders.headers(db_session, builders.user(db_session))

    resp = await async_client.get("/rest/nope", headers=headers)
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Table not found"}

    resp = await async_client.post("/reviews", json={"appointment_id": 1, "rating": 9}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["detail"].startswith("rating:")
