"""Table definitions for the chat store.

Each table is described twice: once as DuckDB DDL and once as a
:class:`TableSpec` the store uses to validate columns, coerce UUID and
timestamp values, fill defaults and check references.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Tuple[str, ...]
    uuid_columns: Tuple[str, ...] = ()
    timestamp_columns: Tuple[str, ...] = ()
    # column -> table whose ``id`` it must reference
    references: Dict[str, str] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    # unique key used for upserts / ON CONFLICT DO NOTHING
    conflict_target: Tuple[str, ...] = ()
    # single-column UNIQUE constraints checked by the store
    unique_columns: Tuple[str, ...] = ()


TABLE_SPECS: Dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(
            name="users",
            columns=("id", "email", "created_at"),
            uuid_columns=("id",),
            timestamp_columns=("created_at",),
        ),
        TableSpec(
            name="profiles",
            columns=("id", "username", "avatar_url", "updated_at"),
            uuid_columns=("id",),
            timestamp_columns=("updated_at",),
            references={"id": "users"},
            unique_columns=("username",),
        ),
        TableSpec(
            name="rooms",
            columns=("id", "name", "description", "created_by", "is_private", "created_at"),
            uuid_columns=("id", "created_by"),
            timestamp_columns=("created_at",),
            references={"created_by": "users"},
            defaults={"is_private": False},
        ),
        TableSpec(
            name="room_members",
            columns=("id", "room_id", "user_id", "joined_at"),
            uuid_columns=("id", "room_id", "user_id"),
            timestamp_columns=("joined_at",),
            references={"room_id": "rooms", "user_id": "users"},
            conflict_target=("room_id", "user_id"),
        ),
        TableSpec(
            name="messages",
            columns=("id", "content", "user_id", "user_email", "room_id", "created_at"),
            uuid_columns=("id", "user_id", "room_id"),
            timestamp_columns=("created_at",),
            references={"user_id": "users", "room_id": "rooms"},
        ),
        TableSpec(
            name="message_reads",
            columns=("id", "message_id", "user_id", "read_at"),
            uuid_columns=("id", "message_id", "user_id"),
            timestamp_columns=("read_at",),
            references={"message_id": "messages", "user_id": "users"},
            conflict_target=("message_id", "user_id"),
        ),
        TableSpec(
            name="typing_indicators",
            columns=("id", "room_id", "user_id", "is_typing", "last_updated"),
            uuid_columns=("id", "room_id", "user_id"),
            timestamp_columns=("last_updated",),
            references={"room_id": "rooms", "user_id": "users"},
            defaults={"is_typing": True},
            conflict_target=("room_id", "user_id"),
        ),
        TableSpec(
            name="direct_conversations",
            columns=("id", "pair_key", "created_at", "updated_at"),
            uuid_columns=("id",),
            timestamp_columns=("created_at", "updated_at"),
        ),
        TableSpec(
            name="direct_participants",
            columns=("id", "conversation_id", "user_id", "joined_at"),
            uuid_columns=("id", "conversation_id", "user_id"),
            timestamp_columns=("joined_at",),
            references={"conversation_id": "direct_conversations", "user_id": "users"},
            conflict_target=("conversation_id", "user_id"),
        ),
        TableSpec(
            name="direct_messages",
            columns=("id", "conversation_id", "sender_id", "content", "created_at"),
            uuid_columns=("id", "conversation_id", "sender_id"),
            timestamp_columns=("created_at",),
            references={"conversation_id": "direct_conversations", "sender_id": "users"},
        ),
    )
}


# Referential integrity and profiles.username uniqueness are enforced by the
# store: DuckDB rejects updates to rows that other tables reference and to
# indexed columns inside a transaction.
SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        email       VARCHAR NOT NULL UNIQUE,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id          VARCHAR PRIMARY KEY,
        username    VARCHAR,
        avatar_url  VARCHAR,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id          VARCHAR PRIMARY KEY,
        name        VARCHAR NOT NULL,
        description VARCHAR,
        created_by  VARCHAR NOT NULL,
        is_private  BOOLEAN NOT NULL DEFAULT false,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_members (
        id          VARCHAR PRIMARY KEY,
        room_id     VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        joined_at   TIMESTAMP NOT NULL,
        UNIQUE (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id          VARCHAR PRIMARY KEY,
        content     VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        user_email  VARCHAR NOT NULL,
        room_id     VARCHAR,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        id          VARCHAR PRIMARY KEY,
        message_id  VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        read_at     TIMESTAMP NOT NULL,
        UNIQUE (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS typing_indicators (
        id            VARCHAR PRIMARY KEY,
        room_id       VARCHAR NOT NULL,
        user_id       VARCHAR NOT NULL,
        is_typing     BOOLEAN NOT NULL DEFAULT true,
        last_updated  TIMESTAMP NOT NULL,
        UNIQUE (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS direct_conversations (
        id          VARCHAR PRIMARY KEY,
        pair_key    VARCHAR UNIQUE,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS direct_participants (
        id               VARCHAR PRIMARY KEY,
        conversation_id  VARCHAR NOT NULL,
        user_id          VARCHAR NOT NULL,
        joined_at        TIMESTAMP NOT NULL,
        UNIQUE (conversation_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS direct_messages (
        id               VARCHAR PRIMARY KEY,
        conversation_id  VARCHAR NOT NULL,
        sender_id        VARCHAR NOT NULL,
        content          VARCHAR NOT NULL,
        created_at       TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    "CREATE INDEX IF NOT EXISTS idx_direct_messages_conversation ON direct_messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_direct_participants_user ON direct_participants(user_id)",
)
