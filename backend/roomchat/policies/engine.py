"""Row-level security engine.

Evaluates per-row policies the way PostgreSQL does:

    - RLS enabled on a table with no policy for a command denies it.
    - Policies are permissive: any passing policy admits the row.
    - SELECT silently filters rows that do not pass.
    - INSERT raises PermissionDenied when the new row fails every WITH CHECK.
    - UPDATE and DELETE only target rows the caller can see AND that pass the
      command's USING expression. An updated row must then pass WITH CHECK
      (USING is reused for policies that have none).

Predicates receive a :class:`PolicyContext` and the row. The context reads
the store directly with owner privileges, so a policy that consults another
protected table (or its own) can never recurse into policy evaluation.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from roomchat.errors import PermissionDenied

logger = logging.getLogger(__name__)


class Command(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "ALL"


Predicate = Callable[["PolicyContext", dict], bool]


@dataclass(frozen=True)
class Policy:
    """A single named policy.

    Attributes:
        name: Policy name, unique per table.
        table: Table the policy protects.
        command: Command it applies to (ALL covers every command).
        using: Predicate deciding which existing rows are visible/targetable.
        with_check: Predicate new rows must satisfy on INSERT/UPDATE.
    """
    name: str
    table: str
    command: Command
    using: Optional[Predicate] = None
    with_check: Optional[Predicate] = None

    def applies_to(self, command: Command) -> bool:
        return self.command in (command, Command.ALL)

    def check_expression(self) -> Optional[Predicate]:
        return self.with_check or self.using


class PolicyContext:
    """Lookups shared by every predicate evaluated for one caller.

    Membership and visibility sets are loaded lazily, once per context, so
    filtering a page of rows costs a constant number of queries. Call
    :meth:`invalidate` after a write that changes membership.
    """

    def __init__(self, store, user_id: Optional[str]) -> None:
        self.store = store
        self.user_id = user_id
        self._member_room_ids: Optional[Set[str]] = None
        self._public_room_ids: Optional[Set[str]] = None
        self._conversation_ids: Optional[Set[str]] = None
        self._message_rooms: Dict[str, Optional[str]] = {}

    def invalidate(self) -> None:
        self._member_room_ids = None
        self._public_room_ids = None
        self._conversation_ids = None
        self._message_rooms.clear()

    @property
    def member_room_ids(self) -> Set[str]:
        if self._member_room_ids is None:
            if self.user_id is None:
                self._member_room_ids = set()
            else:
                rows = self.store.select("room_members", {"user_id": self.user_id})
                self._member_room_ids = {row["room_id"] for row in rows}
        return self._member_room_ids

    @property
    def public_room_ids(self) -> Set[str]:
        if self._public_room_ids is None:
            rows = self.store.select("rooms", {"is_private": False})
            self._public_room_ids = {row["id"] for row in rows}
        return self._public_room_ids

    @property
    def conversation_ids(self) -> Set[str]:
        if self._conversation_ids is None:
            if self.user_id is None:
                self._conversation_ids = set()
            else:
                rows = self.store.select("direct_participants", {"user_id": self.user_id})
                self._conversation_ids = {row["conversation_id"] for row in rows}
        return self._conversation_ids

    def is_self(self, user_id: Optional[str]) -> bool:
        return self.user_id is not None and user_id == self.user_id

    def is_room_public(self, room_id: Optional[str]) -> bool:
        return room_id is not None and room_id in self.public_room_ids

    def is_room_member(self, room_id: Optional[str]) -> bool:
        return room_id is not None and room_id in self.member_room_ids

    def can_reach_room(self, room_id: Optional[str]) -> bool:
        """Room is public, or the caller is one of its members."""
        return self.is_room_public(room_id) or self.is_room_member(room_id)

    def is_participant(self, conversation_id: Optional[str]) -> bool:
        return conversation_id is not None and conversation_id in self.conversation_ids

    def room_of_message(self, message_id: Optional[str]) -> Optional[str]:
        if message_id is None:
            return None
        if message_id not in self._message_rooms:
            message = self.store.select_one("messages", {"id": message_id})
            self._message_rooms[message_id] = message["room_id"] if message else None
        return self._message_rooms[message_id]


class PolicyEngine:
    """Registry of tables with RLS enabled and the policies protecting them."""

    def __init__(self) -> None:
        self._enabled: Set[str] = set()
        self._policies: Dict[str, List[Policy]] = {}

    def enable_rls(self, table: str) -> None:
        self._enabled.add(table)

    def is_enabled(self, table: str) -> bool:
        return table in self._enabled

    def add(self, policy: Policy) -> None:
        existing = self._policies.setdefault(policy.table, [])
        if any(p.name == policy.name for p in existing):
            raise ValueError(f'policy "{policy.name}" for table "{policy.table}" already exists')
        existing.append(policy)

    def extend(self, policies: Iterable[Policy]) -> None:
        for policy in policies:
            self.add(policy)

    def policies(self, table: str, command: Optional[Command] = None) -> List[Policy]:
        policies = self._policies.get(table, [])
        if command is None:
            return list(policies)
        return [p for p in policies if p.applies_to(command)]

    def context(self, store, user_id: Optional[str]) -> PolicyContext:
        return PolicyContext(store, user_id)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _any_using(self, ctx: PolicyContext, table: str, command: Command, row: dict) -> bool:
        return any(
            p.using is not None and p.using(ctx, row)
            for p in self.policies(table, command)
        )

    def _any_check(self, ctx: PolicyContext, table: str, command: Command, row: dict) -> bool:
        for policy in self.policies(table, command):
            check = policy.check_expression()
            if check is not None and check(ctx, row):
                return True
        return False

    def can_select(self, ctx: PolicyContext, table: str, row: dict) -> bool:
        if not self.is_enabled(table):
            return True
        return self._any_using(ctx, table, Command.SELECT, row)

    def filter(self, ctx: PolicyContext, table: str, rows: Iterable[dict]) -> List[dict]:
        return [row for row in rows if self.can_select(ctx, table, row)]

    def check_insert(self, ctx: PolicyContext, table: str, row: dict) -> None:
        if not self.is_enabled(table):
            return
        if not self._any_check(ctx, table, Command.INSERT, row):
            logger.info("[RLS] INSERT on %s denied for %s", table, ctx.user_id)
            raise PermissionDenied(
                f'new row violates row-level security policy for table "{table}"'
            )

    def can_update(self, ctx: PolicyContext, table: str, row: dict) -> bool:
        if not self.is_enabled(table):
            return True
        return self.can_select(ctx, table, row) and self._any_using(ctx, table, Command.UPDATE, row)

    def check_update(self, ctx: PolicyContext, table: str, new_row: dict) -> None:
        if not self.is_enabled(table):
            return
        if not self._any_check(ctx, table, Command.UPDATE, new_row):
            logger.info("[RLS] UPDATE on %s denied for %s", table, ctx.user_id)
            raise PermissionDenied(
                f'new row violates row-level security policy for table "{table}"'
            )

    def can_delete(self, ctx: PolicyContext, table: str, row: dict) -> bool:
        if not self.is_enabled(table):
            return True
        return self.can_select(ctx, table, row) and self._any_using(ctx, table, Command.DELETE, row)
