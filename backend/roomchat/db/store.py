"""DuckDB-backed chat store.

This module owns the single DuckDB connection used by the service. It
provides plain row access (select / insert / update / delete), the two
row triggers the chat schema relies on, and the definer procedure that
deduplicates direct conversations.

Row-level authorization is NOT applied here: the store runs with owner
privileges. Caller-scoped access goes through
:class:`roomchat.db.session.UserSession`.

Change events:
    Every committed write to a published table produces a
    :class:`~roomchat.db.changes.ChangeEvent`. Events raised inside a
    transaction are held back until it commits and are dropped on
    rollback. Listeners are called synchronously in commit order.

Thread Safety:
    DuckDB connections are not thread-safe. All statements run under a
    re-entrant lock, so the store can be shared between the event loop and
    threadpool workers of a single process.
"""
import hashlib
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import duckdb

from roomchat.config import PUBLISHED_TABLES
from roomchat.errors import (
    CheckViolation,
    DatabaseError,
    ForeignKeyViolation,
    InvalidTextRepresentation,
    NotNullViolation,
    UndefinedColumn,
    UndefinedTable,
    UniqueViolation,
)

from .changes import ChangeEvent
from .schema import SCHEMA_DDL, TABLE_SPECS, TableSpec

logger = logging.getLogger(__name__)

GRAVATAR_URL = "https://www.gravatar.com/avatar/{digest}?d=mp"

# where-clause suffixes: {"created_at__lt": ts, "id__in": [...]}
_OPERATORS = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}

ChangeListener = Callable[[ChangeEvent], None]
RowTrigger = Callable[[dict], None]


# =============================================================================
# Value helpers
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise InvalidTextRepresentation(
                f'invalid input syntax for type timestamp: "{value}"'
            ) from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_uuid(value: Any) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError):
        raise InvalidTextRepresentation(f'invalid input syntax for type uuid: "{value}"') from None


def pair_key(user1_id: str, user2_id: str) -> str:
    """Order-independent key identifying the conversation between two users."""
    return ":".join(sorted((user1_id, user2_id)))


def gravatar_url(email: str) -> str:
    digest = hashlib.md5(email.lower().encode("utf-8")).hexdigest()
    return GRAVATAR_URL.format(digest=digest)


def _translate_constraint(exc: duckdb.ConstraintException) -> DatabaseError:
    message = str(exc)
    lowered = message.lower()
    if "duplicate key" in lowered or "unique" in lowered:
        return UniqueViolation(message)
    if "not null" in lowered:
        return NotNullViolation(message)
    if "foreign key" in lowered:
        return ForeignKeyViolation(message)
    return DatabaseError(message)


# =============================================================================
# Store
# =============================================================================


class ChatStore:
    """Singleton DuckDB store for every chat table.

    Attributes:
        _instance: Singleton instance of the store.
        _default_db_path: Database file used when no path is given.
    """

    _instance: Optional["ChatStore"] = None
    _default_db_path: str = "roomchat.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        published_tables: Optional[Iterable[str]] = None,
    ) -> None:
        self._db_path = db_path or self._default_db_path
        self._published = set(PUBLISHED_TABLES if published_tables is None else published_tables)
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._lock = threading.RLock()
        self._last_ts: Optional[datetime] = None
        self._listeners: List[ChangeListener] = []
        self._pending_events: Optional[List[ChangeEvent]] = None
        self._triggers: Dict[str, List[RowTrigger]] = {}
        self._initialize_db()

        # AFTER INSERT triggers
        self.add_trigger("users", self._handle_new_user)
        self.add_trigger("direct_messages", self._update_conversation_timestamp)
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(
        cls,
        db_path: Optional[str] = None,
        published_tables: Optional[Iterable[str]] = None,
    ) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            published_tables: Tables whose changes feed the realtime hub
                (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path, published_tables)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def published_tables(self) -> set:
        """Tables whose committed changes are emitted to listeners."""
        return set(self._published)

    def session(self, user_id: Optional[str]):
        """Return a :class:`UserSession` acting as ``user_id`` under row-level security."""
        from .session import UserSession

        return UserSession(self, user_id)

    def _initialize_db(self) -> None:
        for ddl in SCHEMA_DDL:
            self._execute(ddl)

    # =========================================================================
    # Listeners & triggers
    # =========================================================================

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_trigger(self, table: str, trigger: RowTrigger) -> None:
        """Register a function run after each insert into ``table``, inside the same transaction."""
        self._triggers.setdefault(table, []).append(trigger)

    def _emit(self, table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        if table not in self._published:
            return
        event = ChangeEvent(
            table=table,
            eventType=event_type,
            new=new or {},
            old=old or {},
            commit_timestamp=to_iso(utc_now()),
        )
        if self._pending_events is not None:
            self._pending_events.append(event)
        else:
            self._deliver(event)

    def _deliver(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("[Store] Change listener failed for %s on %s", event.eventType, event.table)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block atomically. Nested blocks join the outer transaction."""
        with self._lock:
            if self._pending_events is not None:
                yield
                return
            self._connection().begin()
            self._pending_events = []
            try:
                yield
                self._connection().commit()
            except BaseException:
                self._connection().rollback()
                raise
            finally:
                events, self._pending_events = self._pending_events, None
        for event in events:
            self._deliver(event)

    # =========================================================================
    # Low-level execution
    # =========================================================================

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise DatabaseError("The chat store has been closed")
        return self._conn

    def _execute(self, sql: str, params: Optional[list] = None) -> duckdb.DuckDBPyConnection:
        try:
            return self._connection().execute(sql, params or [])
        except duckdb.ConstraintException as exc:
            raise _translate_constraint(exc) from exc
        except duckdb.CatalogException as exc:
            raise UndefinedTable(str(exc)) from exc
        except (duckdb.ConversionException, duckdb.InvalidInputException) as exc:
            raise InvalidTextRepresentation(str(exc)) from exc
        except duckdb.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def _fetch_dicts(self, sql: str, params: Optional[list] = None) -> List[dict]:
        cursor = self._execute(sql, params)
        columns = [d[0] for d in cursor.description]
        return [self._row_to_dict(columns, row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_dict(columns: List[str], row: tuple) -> dict:
        d = dict(zip(columns, row))
        for key, value in d.items():
            if isinstance(value, datetime):
                d[key] = to_iso(value)
        return d

    def now(self) -> datetime:
        """Current UTC time, strictly increasing across calls."""
        with self._lock:
            current = utc_now()
            if self._last_ts is not None and current <= self._last_ts:
                current = self._last_ts + timedelta(microseconds=1)
            self._last_ts = current
            return current

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def spec(table: str) -> TableSpec:
        spec = TABLE_SPECS.get(table)
        if spec is None:
            raise UndefinedTable(f'relation "public.{table}" does not exist')
        return spec

    @staticmethod
    def _check_column(spec: TableSpec, column: str) -> None:
        if column not in spec.columns:
            raise UndefinedColumn(f'column {spec.name}.{column} does not exist')

    def _coerce(self, spec: TableSpec, column: str, value: Any) -> Any:
        self._check_column(spec, column)
        if value is None:
            return None
        if column in spec.uuid_columns:
            return normalize_uuid(value)
        if column in spec.timestamp_columns:
            return parse_timestamp(value)
        return value

    def _where(self, spec: TableSpec, where: Optional[Dict[str, Any]]) -> tuple:
        if not where:
            return "", []
        parts: List[str] = []
        params: List[Any] = []
        for key, value in where.items():
            column, _, op = key.partition("__")
            self._check_column(spec, column)
            if op == "in":
                values = [self._coerce(spec, column, v) for v in value]
                if not values:
                    parts.append("FALSE")
                    continue
                parts.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif op in ("", "eq") and value is None:
                parts.append(f"{column} IS NULL")
            elif (op or "eq") in _OPERATORS:
                parts.append(f"{column} {_OPERATORS[op or 'eq']} ?")
                params.append(self._coerce(spec, column, value))
            else:
                raise ValueError(f"Unsupported operator: {op}")
        return " WHERE " + " AND ".join(parts), params

    def coerce_values(self, table: str, values: Dict[str, Any]) -> dict:
        """Validate and coerce column values without filling defaults."""
        spec = self.spec(table)
        return {column: self._coerce(spec, column, value) for column, value in values.items()}

    def prepare_row(self, table: str, values: Dict[str, Any]) -> dict:
        """Coerce values and fill id, column defaults and timestamps."""
        spec = self.spec(table)
        row = {column: self._coerce(spec, column, value) for column, value in values.items()}
        if row.get("id") is None:
            row["id"] = str(uuid.uuid4())
        for column, default in spec.defaults.items():
            if row.get(column) is None:
                row[column] = default
        now = None
        for column in spec.timestamp_columns:
            if row.get(column) is None:
                now = now or self.now()
                row[column] = now
        return row

    def _check_references(self, spec: TableSpec, row: Dict[str, Any]) -> None:
        for column, target in spec.references.items():
            value = row.get(column)
            if value is None:
                continue
            found = self._execute(f"SELECT 1 FROM {target} WHERE id = ? LIMIT 1", [value]).fetchone()
            if found is None:
                raise ForeignKeyViolation(
                    f'insert or update on table "{spec.name}" violates foreign key '
                    f'constraint "{spec.name}_{column}_fkey"',
                    details=f'Key ({column})=({value}) is not present in table "{target}".',
                )

    def _check_unique(self, spec: TableSpec, row: Dict[str, Any], exclude_id: Optional[str] = None) -> None:
        for column in spec.unique_columns:
            value = row.get(column)
            if value is None:
                continue
            found = self._execute(f"SELECT id FROM {spec.name} WHERE {column} = ?", [value]).fetchall()
            if any(existing_id != exclude_id for (existing_id,) in found):
                raise UniqueViolation(
                    f'duplicate key value violates unique constraint "{spec.name}_{column}_key"',
                    details=f"Key ({column})=({value}) already exists.",
                )

    # =========================================================================
    # Row access
    # =========================================================================

    def select(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[dict]:
        spec = self.spec(table)
        clause, params = self._where(spec, where)
        sql = f"SELECT * FROM {table}{clause}"
        if order_by:
            self._check_column(spec, order_by)
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {order_by} {direction}, id {direction}"
        elif offset:
            sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        if offset:
            sql += " OFFSET ?"
            params.append(int(offset))
        with self._lock:
            return self._fetch_dicts(sql, params)

    def select_one(self, table: str, where: Dict[str, Any]) -> Optional[dict]:
        rows = self.select(table, where, limit=1)
        return rows[0] if rows else None

    def find_conflict(self, table: str, row: Dict[str, Any]) -> Optional[dict]:
        """Return the stored row sharing ``row``'s unique key, if any."""
        spec = self.spec(table)
        if not spec.conflict_target:
            return None
        return self.select_one(table, {column: row.get(column) for column in spec.conflict_target})

    def insert(self, table: str, values: Dict[str, Any], on_conflict: Optional[str] = None) -> Optional[dict]:
        """Insert one row and return it as stored.

        Args:
            table: Target table.
            values: Column values; id, defaults and timestamps are filled in.
            on_conflict: None to raise UniqueViolation on a duplicate key,
                "nothing" to skip the insert (returns None), or "update" to
                overwrite the existing row's non-key columns.
        """
        if on_conflict not in (None, "nothing", "update"):
            raise ValueError(f"Unsupported on_conflict: {on_conflict}")
        spec = self.spec(table)
        with self.transaction():
            row = self.prepare_row(table, values)
            existing = self.find_conflict(table, row) if on_conflict else None
            if existing is not None:
                if on_conflict == "nothing":
                    return None
                changes = {
                    column: value for column, value in row.items()
                    if column != "id" and column not in spec.conflict_target
                }
                return self.update(table, {"id": existing["id"]}, changes)[0]

            self._check_references(spec, row)
            self._check_unique(spec, row)
            columns = list(row)
            self._execute(
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [row[c] for c in columns],
            )
            stored = self.select_one(table, {"id": row["id"]})
            self._emit(table, "INSERT", new=stored)
            for trigger in self._triggers.get(table, []):
                trigger(stored)
        return stored

    def update(self, table: str, where: Dict[str, Any], values: Dict[str, Any]) -> List[dict]:
        """Update matching rows and return them as stored after the change."""
        spec = self.spec(table)
        with self.transaction():
            before = self.select(table, where)
            if not before:
                return []
            changes = {c: self._coerce(spec, c, v) for c, v in values.items() if c != "id"}
            if not changes:
                return before
            self._check_references(spec, changes)
            for column in spec.unique_columns:
                if changes.get(column) is not None and len(before) > 1:
                    raise UniqueViolation(
                        f'duplicate key value violates unique constraint "{spec.name}_{column}_key"'
                    )
            if len(before) == 1:
                self._check_unique(spec, changes, exclude_id=before[0]["id"])

            ids = [row["id"] for row in before]
            set_clause = ", ".join(f"{column} = ?" for column in changes)
            self._execute(
                f"UPDATE {table} SET {set_clause} WHERE id IN ({', '.join('?' for _ in ids)})",
                list(changes.values()) + ids,
            )
            after = self.select(table, {"id__in": ids})
            old_by_id = {row["id"]: row for row in before}
            for row in after:
                self._emit(table, "UPDATE", new=row, old=old_by_id.get(row["id"]))
        return after

    def delete(self, table: str, where: Dict[str, Any]) -> List[dict]:
        """Delete matching rows and return them."""
        with self.transaction():
            before = self.select(table, where)
            if not before:
                return []
            ids = [row["id"] for row in before]
            self._execute(
                f"DELETE FROM {table} WHERE id IN ({', '.join('?' for _ in ids)})",
                ids,
            )
            for row in before:
                self._emit(table, "DELETE", old=row)
        return before

    # =========================================================================
    # Users & triggers
    # =========================================================================

    def ensure_user(self, user_id: str, email: str) -> dict:
        """Provision a user row the first time an identity is seen.

        Inserting the user fires the new-user trigger, which creates the
        matching profile.
        """
        user_id = normalize_uuid(user_id)
        with self._lock:
            existing = self.select_one("users", {"id": user_id})
            if existing is not None:
                return existing
            user = self.insert("users", {"id": user_id, "email": email})
        logger.info("[Store] Provisioned user %s (%s)", user_id, email)
        return user

    def _handle_new_user(self, user: dict) -> None:
        self.insert("profiles", {
            "id": user["id"],
            "username": user["email"],
            "avatar_url": gravatar_url(user["email"]),
        })

    def _update_conversation_timestamp(self, message: dict) -> None:
        self.update(
            "direct_conversations",
            {"id": message["conversation_id"]},
            {"updated_at": self.now()},
        )

    # =========================================================================
    # Direct conversations
    # =========================================================================

    def _find_conversation(self, user1_id: str, user2_id: str) -> Optional[str]:
        row = self._execute(
            """
            SELECT c.id FROM direct_conversations c
            WHERE c.pair_key = ?
               OR (
                    EXISTS (SELECT 1 FROM direct_participants p1
                            WHERE p1.conversation_id = c.id AND p1.user_id = ?)
                AND EXISTS (SELECT 1 FROM direct_participants p2
                            WHERE p2.conversation_id = c.id AND p2.user_id = ?)
                AND (SELECT COUNT(*) FROM direct_participants p
                     WHERE p.conversation_id = c.id) = 2
               )
            ORDER BY c.created_at
            LIMIT 1
            """,
            [pair_key(user1_id, user2_id), user1_id, user2_id],
        ).fetchone()
        return row[0] if row else None

    def find_or_create_conversation(self, user1_id: str, user2_id: str) -> str:
        """Return the two users' conversation id, creating it if needed.

        Runs with store privileges. The conversation's ``pair_key`` is
        unique, so a concurrent creator for the same pair fails on insert
        and the existing conversation is returned instead.
        """
        user1_id = normalize_uuid(user1_id)
        user2_id = normalize_uuid(user2_id)
        if user1_id == user2_id:
            raise CheckViolation("A direct conversation needs two different users")

        with self._lock:
            existing = self._find_conversation(user1_id, user2_id)
            if existing is not None:
                return existing
            try:
                with self.transaction():
                    conversation = self.insert(
                        "direct_conversations", {"pair_key": pair_key(user1_id, user2_id)}
                    )
                    for participant in (user1_id, user2_id):
                        self.insert("direct_participants", {
                            "conversation_id": conversation["id"],
                            "user_id": participant,
                        })
            except UniqueViolation:
                existing = self._find_conversation(user1_id, user2_id)
                if existing is None:
                    raise
                logger.info("[Store] Conversation for %s/%s created concurrently", user1_id, user2_id)
                return existing

        logger.info(
            "[Store] Created conversation %s between %s and %s",
            conversation["id"], user1_id, user2_id,
        )
        return conversation["id"]
