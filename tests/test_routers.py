import pytest
from fastapi.testclient import TestClient

from dm_relay.database.connection import mongo_db_dependency
from dm_relay.main import app
from dm_relay.utils.dependencies import realtime_bus_dependency
from dm_relay.utils.realtime_bus import LocalBus
from tests.mongo_double import AsyncMockDatabase


@pytest.fixture
def client():
    db = AsyncMockDatabase()
    users = db.raw("users")
    users.insert_one({"_id": "alice", "display_name": "Alice", "photo_url": None})
    users.insert_one({"_id": "bob", "display_name": "Bob", "photo_url": None})
    bus = LocalBus()

    async def override_db():
        return db

    async def override_bus():
        return bus

    app.dependency_overrides[mongo_db_dependency] = override_db
    app.dependency_overrides[realtime_bus_dependency] = override_bus
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user_id):
    return {"X-User-Id": user_id}


def test_requires_user_header(client):
    resp = client.get("/conversations")
    assert resp.status_code == 401


def test_start_conversation(client):
    resp = client.post("/conversations", json={"other_user_id": "bob"}, headers=as_user("alice"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["conversation_id"] == "alice__bob"
    assert body["other_user"] == {"id": "bob", "name": "Bob", "image": None}


def test_start_conversation_errors(client):
    assert client.post("/conversations", json={"other_user_id": "alice"}, headers=as_user("alice")).status_code == 400
    assert client.post("/conversations", json={"other_user_id": "ghost"}, headers=as_user("alice")).status_code == 404


def test_send_and_read_history(client):
    client.post("/conversations", json={"other_user_id": "bob"}, headers=as_user("alice"))

    resp = client.post(
        "/messages",
        json={"conversation_id": "alice__bob", "to": "bob", "content": "hi", "client_message_id": "c1"},
        headers=as_user("alice"),
    )
    assert resp.status_code == 200
    ack = resp.json()["ack"]
    assert ack["conversation_id"] == "alice__bob"
    assert ack["client_message_id"] == "c1"

    history = client.get("/conversations/alice__bob/messages", headers=as_user("alice")).json()
    assert [m["text"] for m in history["items"]] == ["hi"]

    listing = client.get("/conversations", headers=as_user("alice")).json()
    assert listing["items"][0]["last_message"] == "hi"


def test_send_blank_message_is_rejected(client):
    resp = client.post(
        "/messages",
        json={"conversation_id": "alice__bob", "to": "bob", "content": "  "},
        headers=as_user("alice"),
    )
    assert resp.status_code == 400


def test_history_of_foreign_conversation_is_rejected(client):
    resp = client.get("/conversations/bob__carol/messages", headers=as_user("alice"))
    assert resp.status_code == 400


def test_mark_read(client):
    client.post("/conversations", json={"other_user_id": "bob"}, headers=as_user("alice"))

    resp = client.post("/conversations/alice__bob/read", headers=as_user("bob"))
    assert resp.json() == {"updated": True}


def test_websocket_send_acknowledges(client):
    with client.websocket_connect("/messages/ws/alice") as ws:
        ws.send_json({"type": "start", "to": "bob"})
        assert ws.receive_json()["conversation_id"] == "alice__bob"

        ws.send_json({"type": "send", "conversation_id": "alice__bob", "content": "   "})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["error"] == "EmptyMessage"

        ws.send_json({"type": "send", "conversation_id": "alice__bob", "content": "hello"})
        ack = ws.receive_json()
        assert ack["type"] == "ack"
        assert ack["ack"]["conversation_id"] == "alice__bob"
