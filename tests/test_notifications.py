"""
Notification fan-out, inbox endpoints, WebSocket transport and Expo push.
"""

import asyncio
import json
import threading

import httpx
import pytest
from starlette.websockets import WebSocketDisconnect

import notifications
from database import create_document
from notifications import NotificationDispatcher, NotificationTransport, PushSender
from schemas import Notification


class FailingSocket:
    async def send_json(self, data):
        raise RuntimeError("connection reset")


class RecordingSocket:
    def __init__(self):
        self.messages = []

    async def send_json(self, data):
        self.messages.append(data)


def run(coro):
    return asyncio.run(coro)


# ============================================================================
# Fan-out
# ============================================================================

class TestFanOut:

    def test_public_catalog_notifies_every_active_user(self, client, db, admin, alice, bob, auth, app_state):
        db["user"].update_one({"_id": bob["_id"]}, {"$set": {"expoPushTokens": ["ExponentPushToken[bob]"]}})
        client.post("/api/catalogs", json={"name": "Nouveautés"}, headers=auth(admin))

        recipients = sorted(n["user"] for n in db["notification"].find({"title": "New catalog"}))
        assert recipients == sorted([str(alice["_id"]), str(bob["_id"])])
        assert ["ExponentPushToken[bob]"] in [p["tokens"] for p in app_state["push"].sent]

    def test_private_catalog_notifies_allowed_users_only(self, client, db, admin, alice, bob, auth):
        client.post("/api/catalogs", json={"name": "VIP", "isPublic": False, "allowedUserIds": [str(bob["_id"])]},
                    headers=auth(admin))
        recipients = [n["user"] for n in db["notification"].find({"title": "New catalog"})]
        assert recipients == [str(bob["_id"])]

    def test_new_product_notification(self, client, db, admin, alice, auth):
        catalog = client.post("/api/catalogs", json={"name": "Gourmettes"}, headers=auth(admin)).json()
        client.post(f"/api/catalogs/{catalog['id']}/products", json={"name": "Gourmette Or", "serialNumber": "GM-1"},
                    headers=auth(admin))
        notification = db["notification"].find_one({"title": "New product"})
        assert notification["user"] == str(alice["_id"])
        assert notification["data"]["catalogId"] == catalog["id"]

    def test_one_failing_recipient_does_not_stop_others(self, db, alice, bob):
        transport = NotificationTransport()

        class FlakyPush:
            calls = 0

            async def send(self, tokens, title, body, data=None):
                FlakyPush.calls += 1
                if FlakyPush.calls == 1:
                    raise RuntimeError("push gateway down")
                return 0

        dispatcher = NotificationDispatcher(db, transport, FlakyPush())
        stored = run(dispatcher.notify([alice, bob], "Bonjour", "Test"))
        assert stored == 2
        assert db["notification"].count_documents({"title": "Bonjour"}) == 2

    def test_dispatch_swallows_handler_errors(self, db):
        dispatcher = NotificationDispatcher(db, NotificationTransport(), None)
        assert run(dispatcher.dispatch("catalog_created", {"name": "sans id"})) == 0

    def test_storage_runs_off_the_event_loop(self, db, alice, bob, app_state, monkeypatch):
        threads = []

        def recording_create(database, collection_name, document):
            threads.append(threading.get_ident())
            return create_document(database, collection_name, document)

        async def fan_out():
            dispatcher = NotificationDispatcher(db, NotificationTransport(), app_state["push"])
            stored = await dispatcher.catalog_created({"_id": "c1", "name": "Bagues", "isPublic": True})
            return stored, threading.get_ident()

        monkeypatch.setattr(notifications, "create_document", recording_create)
        stored, loop_thread = run(fan_out())
        assert stored == 2
        assert len(threads) == 2
        assert loop_thread not in threads


# ============================================================================
# Inbox
# ============================================================================

class TestInbox:

    @pytest.fixture
    def inbox(self, db, alice):
        return [
            create_document(db, "notification", Notification(user=str(alice["_id"]), title=f"N{i}", body="..."))
            for i in range(3)
        ]

    def test_list_and_unread(self, client, alice, auth, inbox):
        listed = client.get("/api/notifications", headers=auth(alice)).json()
        assert {n["id"] for n in listed} == set(inbox)
        assert client.get("/api/notifications/unread", headers=auth(alice)).json() == {"count": 3}

    def test_mark_read(self, client, alice, auth, inbox):
        response = client.put(f"/api/notifications/{inbox[0]}/read", headers=auth(alice))
        assert response.status_code == 200
        assert response.json()["read"] is True
        assert client.get("/api/notifications/unread", headers=auth(alice)).json() == {"count": 2}

    def test_mark_all_read(self, client, alice, auth, inbox):
        response = client.put("/api/notifications/read-all", headers=auth(alice))
        assert response.json()["updated"] == 3
        assert client.get("/api/notifications/unread", headers=auth(alice)).json() == {"count": 0}

    def test_cannot_touch_someone_elses(self, client, bob, auth, inbox):
        assert client.put(f"/api/notifications/{inbox[0]}/read", headers=auth(bob)).status_code == 404
        assert client.delete(f"/api/notifications/{inbox[0]}", headers=auth(bob)).status_code == 404

    def test_delete(self, client, db, alice, auth, inbox):
        assert client.delete(f"/api/notifications/{inbox[1]}", headers=auth(alice)).status_code == 200
        assert db["notification"].count_documents({}) == 2


# ============================================================================
# Transport
# ============================================================================

class TestTransport:

    def test_send_reaches_every_connection(self):
        transport = NotificationTransport()
        first, second = RecordingSocket(), RecordingSocket()

        async def scenario():
            await transport.register("u1", first)
            await transport.register("u1", second)
            return await transport.send("u1", "notification", {"title": "Hi"})

        assert run(scenario()) == 2
        assert first.messages == [{"event": "notification", "data": {"title": "Hi"}}]

    def test_dead_socket_is_dropped(self):
        transport = NotificationTransport()
        healthy = RecordingSocket()

        async def scenario():
            await transport.register("u1", FailingSocket())
            await transport.register("u1", healthy)
            return await transport.send("u1", "notification", {})

        assert run(scenario()) == 1
        assert transport.connection_count("u1") == 1

    def test_websocket_receives_notifications(self, client, admin, alice, auth):
        token = auth(alice)["Authorization"].split()[1]
        with client.websocket_connect(f"/ws?token={token}") as ws:
            assert ws.receive_json() == {"event": "connected", "data": {"userId": str(alice["_id"])}}
            client.post("/api/catalogs", json={"name": "Live"}, headers=auth(admin))
            message = ws.receive_json()
            assert message["event"] == "notification"
            assert message["data"]["title"] == "New catalog"

    def test_websocket_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws?token=nope") as ws:
                ws.receive_json()
        assert excinfo.value.code == 4401


# ============================================================================
# Expo push
# ============================================================================

class TestPushSender:

    def test_chunks_and_filters_tokens(self):
        batches = []

        def handler(request):
            chunk = json.loads(request.content)
            batches.append(chunk)
            return httpx.Response(200, json={"data": [{"status": "ok"} for _ in chunk]})

        sender = PushSender("https://push.bijoux.fr/send", transport=httpx.MockTransport(handler))
        tokens = [f"ExponentPushToken[{i}]" for i in range(150)] + ["not-an-expo-token"]
        sent = run(sender.send(tokens, "Titre", "Corps", {"type": "catalog"}))

        assert sent == 150
        assert [len(b) for b in batches] == [100, 50]
        assert batches[0][0]["title"] == "Titre"

    def test_gateway_error_is_logged_not_raised(self):
        sender = PushSender("https://push.bijoux.fr/send",
                            transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        assert run(sender.send(["ExponentPushToken[x]"], "T", "B")) == 0

    def test_no_valid_tokens(self):
        assert run(PushSender().send(["bad"], "T", "B")) == 0
