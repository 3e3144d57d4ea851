"""Tests for the realtime change feed: filters, hub delivery and the WebSocket protocol."""
import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from roomchat.db.changes import ChangeEvent
from roomchat.realtime.filters import RowFilter, parse_filter
from roomchat.realtime.hub import RealtimeHub


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(message)


def _connect(api_client, user):
    ws = api_client.websocket_connect(f"/realtime?token={user.token}")
    return ws


def _subscribe(ws, channel, table, event="*", row_filter=None):
    request = {"type": "subscribe", "channel": channel, "table": table, "event": event}
    if row_filter is not None:
        request["filter"] = row_filter
    ws.send_json(request)
    return ws.receive_json()


class TestFilters:
    def test_parse_eq(self):
        assert parse_filter("room_id=eq.abc") == RowFilter("room_id", "eq", "abc")

    def test_parse_in(self):
        parsed = parse_filter("user_id=in.(a, b)")
        assert parsed.value == ("a", "b")
        assert parsed.matches({"user_id": "b"})
        assert not parsed.matches({"user_id": "c"})

    def test_empty_filter_is_none(self):
        assert parse_filter(None) is None
        assert parse_filter("  ") is None

    @pytest.mark.parametrize("text", ["room_id", "room_id=abc", "room_id=like.abc", "id=in.a,b"])
    def test_malformed_filters(self, text):
        with pytest.raises(ValueError):
            parse_filter(text)

    def test_matches_booleans_and_numbers(self):
        assert parse_filter("is_private=eq.true").matches({"is_private": True})
        assert parse_filter("count=gt.9").matches({"count": 10})
        assert not parse_filter("count=gt.9").matches({"count": 9})
        assert not parse_filter("missing=eq.x").matches({})

    def test_str_round_trips(self):
        assert str(parse_filter("user_id=in.(a,b)")) == "user_id=in.(a,b)"


class TestHub:
    @pytest.fixture
    def hub(self, store):
        hub = RealtimeHub(max_subscriptions=2)
        hub.attach(store)
        yield hub
        hub.detach()

    @pytest.fixture
    def rooms(self, store, new_user):
        owner = new_user()
        public = store.insert("rooms", {"name": "General", "created_by": owner})
        private = store.insert("rooms", {"name": "Secret", "created_by": owner, "is_private": True})
        store.insert("room_members", {"room_id": private["id"], "user_id": owner})
        return owner, public, private

    def _message(self, store, owner, room):
        return store.insert("messages", {
            "content": "hello",
            "user_id": owner,
            "user_email": "owner@example.com",
            "room_id": room["id"],
        })

    def test_events_are_queued_until_flush(self, hub, store, rooms):
        owner, public, _ = rooms
        ws = FakeWebSocket()
        hub.connect(ws, owner)
        hub.subscribe(ws, "room", "messages")
        hub._queue.clear()

        self._message(store, owner, public)
        assert hub.pending == 1
        assert ws.sent == []

        asyncio.run(hub.flush())
        assert hub.pending == 0
        assert ws.sent[0]["type"] == "postgres_changes"
        assert ws.sent[0]["channel"] == "room"
        assert ws.sent[0]["payload"]["new"]["content"] == "hello"

    def test_delivery_respects_select_policy(self, hub, store, rooms, new_user):
        owner, public, private = rooms
        outsider = new_user()
        owner_ws, outsider_ws = FakeWebSocket(), FakeWebSocket()
        hub.connect(owner_ws, owner)
        hub.connect(outsider_ws, outsider)
        hub.subscribe(owner_ws, "all", "messages")
        hub.subscribe(outsider_ws, "all", "messages")

        event = ChangeEvent(
            table="messages",
            eventType="INSERT",
            new=self._message(store, owner, private),
            old={},
            commit_timestamp=store.now().isoformat(),
        )
        assert asyncio.run(hub.dispatch(event)) == 1
        assert len(owner_ws.sent) == 1
        assert outsider_ws.sent == []

    def test_filter_and_event_type(self, hub, store, rooms):
        owner, public, private = rooms
        ws = FakeWebSocket()
        hub.connect(ws, owner)
        hub.subscribe(ws, "public", "messages", "INSERT", f"room_id=eq.{public['id']}")
        hub.subscribe(ws, "deletes", "messages", "DELETE")
        hub._queue.clear()

        self._message(store, owner, private)
        message = self._message(store, owner, public)
        store.delete("messages", {"id": message["id"]})
        asyncio.run(hub.flush())

        assert [(f["channel"], f["payload"]["eventType"]) for f in ws.sent] == [
            ("public", "INSERT"),
            ("deletes", "DELETE"),
        ]
        assert ws.sent[1]["payload"]["old"]["id"] == message["id"]

    def test_failed_connection_is_dropped(self, hub, store, rooms):
        owner, public, _ = rooms
        ws = FakeWebSocket(fail=True)
        hub.connect(ws, owner)
        hub.subscribe(ws, "room", "messages")
        hub._queue.clear()

        self._message(store, owner, public)
        asyncio.run(hub.flush())

        assert ws not in hub.connections

    def test_subscription_validation(self, hub, rooms):
        owner = rooms[0]
        ws = FakeWebSocket()
        hub.connect(ws, owner)

        with pytest.raises(ValueError):
            hub.subscribe(ws, "x", "users")
        with pytest.raises(ValueError):
            hub.subscribe(ws, "x", "messages", "TRUNCATE")
        with pytest.raises(ValueError):
            hub.subscribe(ws, "", "messages")

        hub.subscribe(ws, "a", "messages")
        hub.subscribe(ws, "b", "rooms")
        # replacing an existing channel does not count against the cap
        hub.subscribe(ws, "a", "room_members")
        with pytest.raises(ValueError):
            hub.subscribe(ws, "c", "profiles")

    def test_unsubscribe(self, hub, rooms):
        ws = FakeWebSocket()
        hub.connect(ws, rooms[0])
        hub.subscribe(ws, "a", "messages")

        assert hub.unsubscribe(ws, "a") is True
        assert hub.unsubscribe(ws, "a") is False

    def test_leaving_private_room_delivers_delete_by_old_row(self, hub, store, rooms, new_user):
        owner, _, private = rooms
        leaver, outsider = new_user(), new_user()
        store.insert("room_members", {"room_id": private["id"], "user_id": leaver})
        sockets = {user: FakeWebSocket() for user in (owner, leaver, outsider)}
        for user, ws in sockets.items():
            hub.connect(ws, user)
            hub.subscribe(ws, "leaves", "room_members", "DELETE")
        hub._queue.clear()

        store.session(leaver).delete("room_members", {"room_id": private["id"]})
        asyncio.run(hub.flush())

        frame = sockets[owner].sent[0]
        assert frame["payload"]["eventType"] == "DELETE"
        assert frame["payload"]["new"] == {}
        assert frame["payload"]["old"]["user_id"] == leaver
        assert len(sockets[leaver].sent) == 1
        assert sockets[outsider].sent == []

    def test_in_filter_delivery(self, hub, store, rooms):
        owner, public, private = rooms
        other = store.insert("rooms", {"name": "Other", "created_by": owner})
        ws = FakeWebSocket()
        hub.connect(ws, owner)
        hub.subscribe(ws, "two rooms", "messages", "INSERT", f"room_id=in.({public['id']},{private['id']})")
        hub._queue.clear()

        for room in (public, other, private):
            self._message(store, owner, room)
        asyncio.run(hub.flush())

        assert [f["payload"]["new"]["room_id"] for f in ws.sent] == [public["id"], private["id"]]

    def test_update_carries_old_and_new(self, hub, store, rooms, new_user):
        owner, public, _ = rooms
        ws = FakeWebSocket()
        hub.connect(ws, new_user())
        hub.subscribe(ws, "renames", "rooms", "UPDATE")
        hub._queue.clear()

        store.session(owner).update("rooms", {"id": public["id"]}, {"name": "Lobby"})
        asyncio.run(hub.flush())

        payload = ws.sent[0]["payload"]
        assert payload["eventType"] == "UPDATE"
        assert payload["old"]["name"] == "General"
        assert payload["new"]["name"] == "Lobby"


class TestWebSocket:
    def test_bad_token_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/realtime?token=nope") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_connected_and_ping(self, api_client, alice):
        with _connect(api_client, alice) as ws:
            assert ws.receive_json() == {"type": "connected", "userId": alice.id}
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_subscribe_and_unsubscribe(self, api_client, alice):
        with _connect(api_client, alice) as ws:
            ws.receive_json()
            subscribed = _subscribe(ws, "room", "messages", "INSERT")
            assert subscribed["type"] == "subscribed"
            assert subscribed["channel"] == "room"
            assert subscribed["subscriptionId"]

            ws.send_json({"type": "unsubscribe", "channel": "room"})
            assert ws.receive_json() == {"type": "unsubscribed", "channel": "room"}
            ws.send_json({"type": "unsubscribe", "channel": "room"})
            assert ws.receive_json()["type"] == "error"

    def test_invalid_frames(self, api_client, alice):
        with _connect(api_client, alice) as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "error": "Invalid JSON"}
            ws.send_json([1, 2])
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "shout"})
            assert "Unknown message type" in ws.receive_json()["error"]
            assert _subscribe(ws, "bad", "messages", row_filter="room_id=like.x")["type"] == "error"

    def test_non_string_fields_get_error_frames(self, api_client, alice):
        with _connect(api_client, alice) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "channel": ["x"], "table": "messages"})
            assert ws.receive_json()["error"] == "channel must be a non-empty string"
            assert _subscribe(ws, "c", "messages", row_filter=5)["error"] == "filter must be a string"
            assert _subscribe(ws, "c", ["messages"])["error"] == "table must be a non-empty string"
            assert _subscribe(ws, "c", "messages", event=None)["type"] == "error"
            ws.send_json({"type": "unsubscribe", "channel": {"name": "c"}})
            assert ws.receive_json()["type"] == "error"

            # the connection is still usable
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_subscription_cap(self, api_client, alice):
        with _connect(api_client, alice) as ws:
            ws.receive_json()
            for i in range(3):
                assert _subscribe(ws, f"c{i}", "messages")["type"] == "subscribed"
            refused = _subscribe(ws, "c3", "messages")
            assert refused["type"] == "error"
            assert "limit 3" in refused["error"]

    def test_message_delivered_to_room_subscriber(self, api_client, alice, bob):
        room = api_client.post("/rooms", json={"name": "General"}, headers=alice.headers).json()

        with _connect(api_client, bob) as ws:
            ws.receive_json()
            _subscribe(ws, "room", "messages", "INSERT", f"room_id=eq.{room['id']}")

            api_client.post(f"/rooms/{room['id']}/messages", json={"content": "hi"}, headers=alice.headers)

            frame = ws.receive_json()
            assert frame["type"] == "postgres_changes"
            assert frame["payload"]["table"] == "messages"
            assert frame["payload"]["new"]["content"] == "hi"

    def test_private_room_messages_not_delivered_to_outsiders(self, api_client, alice, bob):
        private = api_client.post("/rooms", json={"name": "Secret", "is_private": True}, headers=alice.headers).json()
        public = api_client.post("/rooms", json={"name": "General"}, headers=alice.headers).json()

        with _connect(api_client, bob) as ws:
            ws.receive_json()
            _subscribe(ws, "messages", "messages", "INSERT")

            api_client.post(f"/rooms/{private['id']}/messages", json={"content": "secret"}, headers=alice.headers)
            api_client.post(f"/rooms/{public['id']}/messages", json={"content": "open"}, headers=alice.headers)

            # the first frame bob sees is the public one
            frame = ws.receive_json()
            assert frame["payload"]["new"]["content"] == "open"

    def test_room_update_delivered(self, api_client, alice, bob):
        room = api_client.post("/rooms", json={"name": "General"}, headers=alice.headers).json()

        with _connect(api_client, bob) as ws:
            ws.receive_json()
            _subscribe(ws, "rooms", "rooms", "UPDATE", f"id=eq.{room['id']}")

            api_client.patch(f"/rooms/{room['id']}", json={"name": "Lobby"}, headers=alice.headers)

            frame = ws.receive_json()
            assert frame["payload"]["eventType"] == "UPDATE"
            assert frame["payload"]["old"]["name"] == "General"
            assert frame["payload"]["new"]["name"] == "Lobby"
