"""Caller-scoped access to the chat store.

A :class:`UserSession` is what request handlers talk to. Every read is
filtered and every write is checked by the row-level security policies, as
the authenticated user named by ``user_id``.
"""
import logging
from typing import Any, Dict, List, Optional

from roomchat.errors import NoRows, PermissionDenied
from roomchat.policies.engine import PolicyContext, PolicyEngine
from roomchat.policies.rules import get_policy_engine

from .store import ChatStore, normalize_uuid

logger = logging.getLogger(__name__)

# Rows fetched per round trip when a limited select has to skip hidden rows
MIN_BATCH_SIZE = 50


class UserSession:
    """Row access on behalf of one user.

    Args:
        store: The underlying store.
        user_id: The caller's user id (None acts as an anonymous caller).
        engine: Policy engine to enforce (defaults to the chat policies).
    """

    def __init__(
        self,
        store: ChatStore,
        user_id: Optional[str],
        engine: Optional[PolicyEngine] = None,
    ) -> None:
        self.store = store
        self.user_id = normalize_uuid(user_id) if user_id is not None else None
        self.engine = engine or get_policy_engine()

    def context(self) -> PolicyContext:
        return self.engine.context(self.store, self.user_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def select(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Rows matching ``where`` that the caller is allowed to see.

        With a ``limit`` the store is read in pages until enough visible
        rows are found, so a page of history never scans the whole table.
        """
        ctx = self.context()
        if limit is None:
            rows = self.store.select(table, where, order_by=order_by, descending=descending)
            return self.engine.filter(ctx, table, rows)

        batch_size = max(limit, MIN_BATCH_SIZE)
        visible: List[dict] = []
        offset = 0
        while len(visible) < limit:
            rows = self.store.select(
                table, where, order_by=order_by, descending=descending, limit=batch_size, offset=offset
            )
            visible.extend(self.engine.filter(ctx, table, rows))
            if len(rows) < batch_size:
                break
            offset += batch_size
        return visible[:limit]

    def maybe_one(self, table: str, where: Dict[str, Any]) -> Optional[dict]:
        rows = self.select(table, where, limit=1)
        return rows[0] if rows else None

    def select_one(self, table: str, where: Dict[str, Any]) -> dict:
        row = self.maybe_one(table, where)
        if row is None:
            raise NoRows(
                "JSON object requested, multiple (or no) rows returned",
                details="The result contains 0 rows",
            )
        return row

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(self, table: str, values: Dict[str, Any], on_conflict: Optional[str] = None) -> Optional[dict]:
        """Insert a row the caller's INSERT policies admit.

        With ``on_conflict="update"`` an existing row on the same unique key
        is updated instead; that row must pass the UPDATE policies, otherwise
        PermissionDenied is raised.
        """
        with self.store.transaction():
            ctx = self.context()
            row = self.store.prepare_row(table, values)
            if on_conflict == "update":
                existing = self.store.find_conflict(table, row)
                if existing is not None:
                    if not self.engine.can_update(ctx, table, existing):
                        raise PermissionDenied(
                            f'new row violates row-level security policy (USING expression) '
                            f'for table "{table}"'
                        )
                    spec = self.store.spec(table)
                    merged = dict(existing)
                    merged.update({
                        column: value for column, value in row.items()
                        if column != "id" and column not in spec.conflict_target
                    })
                    self.engine.check_update(ctx, table, merged)
                    return self.store.insert(table, row, on_conflict="update")

            self.engine.check_insert(ctx, table, row)
            return self.store.insert(table, row, on_conflict=on_conflict)

    def update(self, table: str, where: Dict[str, Any], values: Dict[str, Any]) -> List[dict]:
        """Update the matching rows the caller may update.

        Rows hidden from the caller, or failing the UPDATE ``USING``
        expressions, are left untouched and omitted from the result.
        """
        changes = self.store.coerce_values(table, values)
        with self.store.transaction():
            ctx = self.context()
            targets = [
                row for row in self.store.select(table, where)
                if self.engine.can_update(ctx, table, row)
            ]
            if not targets:
                return []
            for row in targets:
                merged = dict(row)
                merged.update(changes)
                self.engine.check_update(ctx, table, merged)
            return self.store.update(table, {"id__in": [row["id"] for row in targets]}, changes)

    def delete(self, table: str, where: Dict[str, Any]) -> List[dict]:
        """Delete the matching rows the caller may delete."""
        with self.store.transaction():
            ctx = self.context()
            targets = [
                row for row in self.store.select(table, where)
                if self.engine.can_delete(ctx, table, row)
            ]
            if not targets:
                return []
            return self.store.delete(table, {"id__in": [row["id"] for row in targets]})

    # =========================================================================
    # Procedures
    # =========================================================================

    def find_or_create_conversation(self, other_user_id: str) -> str:
        """Conversation between the caller and ``other_user_id``, created if missing."""
        if self.user_id is None:
            raise PermissionDenied("permission denied for function find_or_create_conversation")
        return self.store.find_or_create_conversation(self.user_id, other_user_id)
