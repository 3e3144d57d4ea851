"""Tests for the DuckDB chat store: rows, triggers, transactions and the conversation procedure."""
import threading
import uuid
from datetime import datetime

import pytest

from roomchat.db.store import ChatStore, gravatar_url, normalize_uuid, pair_key, parse_timestamp
from roomchat.errors import (
    CheckViolation,
    DatabaseError,
    ForeignKeyViolation,
    InvalidTextRepresentation,
    UndefinedColumn,
    UndefinedTable,
    UniqueViolation,
)


class TestHelpers:
    def test_pair_key_is_order_independent(self):
        a, b = str(uuid.uuid4()), str(uuid.uuid4())
        assert pair_key(a, b) == pair_key(b, a)

    def test_gravatar_url_uses_lowercased_email(self):
        assert gravatar_url("Alice@Example.com") == gravatar_url("alice@example.com")
        assert gravatar_url("alice@example.com").startswith("https://www.gravatar.com/avatar/")
        assert gravatar_url("alice@example.com").endswith("?d=mp")

    def test_normalize_uuid_rejects_garbage(self):
        with pytest.raises(InvalidTextRepresentation):
            normalize_uuid("not-a-uuid")

    def test_parse_timestamp_converts_to_naive_utc(self):
        parsed = parse_timestamp("2024-01-01T12:00:00+02:00")
        assert parsed == datetime(2024, 1, 1, 10, 0, 0)
        assert parsed.tzinfo is None

    def test_parse_timestamp_rejects_garbage(self):
        with pytest.raises(InvalidTextRepresentation):
            parse_timestamp("yesterday")


class TestSingleton:
    def test_get_instance_returns_same_store(self, store):
        assert ChatStore.get_instance() is store

    def test_reset_instance_creates_new_store(self, store):
        ChatStore.reset_instance()
        assert ChatStore.get_instance(":memory:") is not store


class TestNewUserTrigger:
    def test_profile_created_with_email_as_username(self, store):
        user_id = str(uuid.uuid4())
        store.ensure_user(user_id, "alice@example.com")

        profile = store.select_one("profiles", {"id": user_id})
        assert profile["username"] == "alice@example.com"
        assert profile["avatar_url"] == gravatar_url("alice@example.com")

    def test_ensure_user_is_idempotent(self, store):
        user_id = str(uuid.uuid4())
        first = store.ensure_user(user_id, "alice@example.com")
        second = store.ensure_user(user_id, "alice@example.com")

        assert first == second
        assert len(store.select("profiles", {"id": user_id})) == 1


class TestRows:
    def test_insert_fills_id_and_timestamps(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})

        assert uuid.UUID(room["id"])
        assert room["is_private"] is False
        assert room["created_at"].endswith("+00:00")

    def test_missing_reference_is_rejected(self, store):
        with pytest.raises(ForeignKeyViolation) as exc_info:
            store.insert("rooms", {"name": "Orphan", "created_by": str(uuid.uuid4())})
        assert "users" in exc_info.value.details

    def test_duplicate_membership_is_rejected(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})
        store.insert("room_members", {"room_id": room["id"], "user_id": owner})

        with pytest.raises(UniqueViolation):
            store.insert("room_members", {"room_id": room["id"], "user_id": owner})

    def test_on_conflict_nothing_skips(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})
        store.insert("room_members", {"room_id": room["id"], "user_id": owner})

        assert store.insert("room_members", {"room_id": room["id"], "user_id": owner}, on_conflict="nothing") is None
        assert len(store.select("room_members", {"room_id": room["id"]})) == 1

    def test_on_conflict_update_overwrites(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})
        first = store.insert("typing_indicators", {"room_id": room["id"], "user_id": owner})
        second = store.insert(
            "typing_indicators",
            {"room_id": room["id"], "user_id": owner, "is_typing": False},
            on_conflict="update",
        )

        assert second["id"] == first["id"]
        assert second["is_typing"] is False
        assert second["last_updated"] > first["last_updated"]

    def test_duplicate_username_is_rejected(self, store, new_user):
        alice = new_user("alice@example.com")
        new_user("bob@example.com")

        with pytest.raises(UniqueViolation):
            store.update("profiles", {"id": alice}, {"username": "bob@example.com"})

    def test_unknown_table_and_column(self, store):
        with pytest.raises(UndefinedTable):
            store.select("nope")
        with pytest.raises(UndefinedColumn):
            store.select("rooms", {"colour": "red"})

    def test_invalid_uuid_in_filter(self, store):
        with pytest.raises(InvalidTextRepresentation):
            store.select("rooms", {"id": "abc"})

    def test_select_where_operators(self, store, new_user):
        owner = new_user()
        rooms = [store.insert("rooms", {"name": f"room {i}", "created_by": owner}) for i in range(3)]

        newer = store.select("rooms", {"created_at__gt": rooms[0]["created_at"]}, order_by="created_at")
        assert [r["id"] for r in newer] == [rooms[1]["id"], rooms[2]["id"]]
        assert store.select("rooms", {"id__in": []}) == []
        assert len(store.select("rooms", {"description": None})) == 3

    def test_timestamps_strictly_increase(self, store):
        stamps = [store.now() for _ in range(100)]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_update_and_delete_return_rows(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})

        updated = store.update("rooms", {"id": room["id"]}, {"name": "Lobby"})
        assert updated[0]["name"] == "Lobby"

        deleted = store.delete("rooms", {"id": room["id"]})
        assert deleted[0]["id"] == room["id"]
        assert store.select("rooms") == []


class TestChangeEvents:
    def test_events_delivered_after_commit(self, store, new_user):
        owner = new_user()
        events = []
        store.add_listener(events.append)

        with store.transaction():
            store.insert("rooms", {"name": "General", "created_by": owner})
            assert events == []

        assert [(e.table, e.eventType) for e in events] == [("rooms", "INSERT")]
        assert events[0].new["name"] == "General"
        assert events[0].to_payload()["schema"] == "public"

    def test_events_dropped_on_rollback(self, store, new_user):
        owner = new_user()
        events = []
        store.add_listener(events.append)

        with pytest.raises(ForeignKeyViolation):
            with store.transaction():
                store.insert("rooms", {"name": "General", "created_by": owner})
                store.insert("room_members", {"room_id": str(uuid.uuid4()), "user_id": owner})

        assert events == []
        assert store.select("rooms") == []

    def test_update_and_delete_events_carry_old_row(self, store, new_user):
        owner = new_user()
        room = store.insert("rooms", {"name": "General", "created_by": owner})
        events = []
        store.add_listener(events.append)

        store.update("rooms", {"id": room["id"]}, {"name": "Lobby"})
        store.delete("rooms", {"id": room["id"]})

        assert events[0].eventType == "UPDATE"
        assert events[0].old["name"] == "General"
        assert events[0].new["name"] == "Lobby"
        assert events[1].eventType == "DELETE"
        assert events[1].record["id"] == room["id"]

    def test_unpublished_tables_emit_nothing(self, store):
        events = []
        store.add_listener(events.append)

        store.ensure_user(str(uuid.uuid4()), "alice@example.com")

        # the users table is not published; its trigger's profile insert is
        assert [e.table for e in events] == ["profiles"]

    def test_failing_listener_does_not_break_writes(self, store, new_user):
        def broken(event):
            raise RuntimeError("boom")

        store.add_listener(broken)
        owner = new_user()
        assert store.insert("rooms", {"name": "General", "created_by": owner})


class TestFindOrCreateConversation:
    def test_creates_conversation_with_both_participants(self, store, new_user):
        alice, bob = new_user(), new_user()
        conversation_id = store.find_or_create_conversation(alice, bob)

        participants = store.select("direct_participants", {"conversation_id": conversation_id})
        assert {p["user_id"] for p in participants} == {alice, bob}

    def test_returns_existing_conversation_in_either_order(self, store, new_user):
        alice, bob = new_user(), new_user()
        first = store.find_or_create_conversation(alice, bob)

        assert store.find_or_create_conversation(bob, alice) == first
        assert len(store.select("direct_conversations")) == 1

    def test_distinct_pairs_get_distinct_conversations(self, store, new_user):
        alice, bob, carol = new_user(), new_user(), new_user()

        assert store.find_or_create_conversation(alice, bob) != store.find_or_create_conversation(alice, carol)

    def test_self_conversation_is_rejected(self, store, new_user):
        alice = new_user()
        with pytest.raises(CheckViolation):
            store.find_or_create_conversation(alice, alice)

    def test_unknown_user_is_rejected(self, store, new_user):
        alice = new_user()
        with pytest.raises(ForeignKeyViolation):
            store.find_or_create_conversation(alice, str(uuid.uuid4()))
        assert store.select("direct_conversations") == []

    def test_concurrent_callers_share_one_conversation(self, store, new_user):
        alice, bob = new_user(), new_user()
        results = []

        def worker(a, b):
            results.append(store.find_or_create_conversation(a, b))

        threads = [threading.Thread(target=worker, args=(alice, bob) if i % 2 else (bob, alice)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(results)) == 1
        assert len(store.select("direct_conversations")) == 1
        assert len(store.select("direct_participants")) == 2

    def test_direct_message_bumps_conversation(self, store, new_user):
        alice, bob = new_user(), new_user()
        conversation_id = store.find_or_create_conversation(alice, bob)
        before = store.select_one("direct_conversations", {"id": conversation_id})["updated_at"]

        store.insert("direct_messages", {"conversation_id": conversation_id, "sender_id": alice, "content": "hi"})

        after = store.select_one("direct_conversations", {"id": conversation_id})["updated_at"]
        assert after > before


class TestTransactions:
    def test_failed_begin_leaves_store_usable(self, store, new_user, monkeypatch):
        owner = new_user()

        def closed():
            raise DatabaseError("The chat store has been closed")

        monkeypatch.setattr(store, "_connection", closed)
        with pytest.raises(DatabaseError):
            with store.transaction():
                pass
        monkeypatch.undo()

        events = []
        store.add_listener(events.append)
        with store.transaction():
            store.insert("rooms", {"name": "General", "created_by": owner})

        # a stuck transaction would hold the event back forever
        assert [e.table for e in events] == ["rooms"]

    def test_select_offset_pages_in_order(self, store, new_user):
        owner = new_user()
        rooms = [store.insert("rooms", {"name": f"room {i}", "created_by": owner}) for i in range(5)]

        page = store.select("rooms", order_by="created_at", limit=2, offset=2)
        assert [r["id"] for r in page] == [rooms[2]["id"], rooms[3]["id"]]
        assert len(store.select("rooms", limit=10, offset=3)) == 2
