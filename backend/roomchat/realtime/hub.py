"""Realtime hub: fans committed row changes out to WebSocket subscribers.

The store calls :meth:`RealtimeHub.enqueue` synchronously for every
committed change (possibly from a threadpool worker). Events are queued and
delivered in commit order by :meth:`RealtimeHub.flush`, which request
handlers await once their writes are done.

Each event reaches a connection only when one of its subscriptions matches
the table, event type and filter AND the connection's user passes the
table's SELECT policy for the row. Visibility is evaluated at delivery time,
so a user who left a private room stops receiving its messages.

Performance Notes:
    - Delivery uses asyncio.gather() for concurrent sends
    - Failed connections are dropped during delivery
    - Policy lookups are cached per (event, user) through one PolicyContext

Thread Safety:
    Everything except enqueue() must run on the event loop.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from fastapi import WebSocket

from roomchat.db.changes import ChangeEvent
from roomchat.db.store import ChatStore
from roomchat.policies.engine import PolicyEngine
from roomchat.policies.rules import get_policy_engine

from .filters import RowFilter, parse_filter

logger = logging.getLogger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE", "*")

# Default cap on subscriptions held by one connection
DEFAULT_MAX_SUBSCRIPTIONS = 20


def _require_text(name: str, value: object) -> None:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} must be a non-empty string")


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class Subscription:
    """One ``postgres_changes`` subscription held by a connection.

    Attributes:
        id: Server-assigned subscription id.
        channel: Client-chosen channel name (unique per connection).
        table: Table to watch.
        event: INSERT, UPDATE, DELETE or ``*``.
        row_filter: Optional column filter.
    """
    id: str
    channel: str
    table: str
    event: str = "*"
    row_filter: Optional[RowFilter] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.event != "*" and self.event != event.eventType:
            return False
        if self.row_filter is not None and not self.row_filter.matches(event.record):
            return False
        return True


@dataclass
class ClientConnection:
    websocket: WebSocket
    user_id: str
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)


# =============================================================================
# Hub
# =============================================================================


class RealtimeHub:
    """Tracks realtime connections and delivers change events to them."""

    def __init__(
        self,
        engine: Optional[PolicyEngine] = None,
        max_subscriptions: int = DEFAULT_MAX_SUBSCRIPTIONS,
        published_tables: Optional[List[str]] = None,
    ) -> None:
        self.engine = engine or get_policy_engine()
        self.max_subscriptions = max_subscriptions
        self.published_tables = published_tables
        self.connections: Dict[WebSocket, ClientConnection] = {}
        self._queue: Deque[ChangeEvent] = deque()
        self._store: Optional[ChatStore] = None
        self._flush_lock: Optional[asyncio.Lock] = None

    # =========================================================================
    # Store wiring
    # =========================================================================

    def attach(self, store: ChatStore) -> None:
        """Start receiving ``store``'s change events."""
        self.detach()
        self._store = store
        store.add_listener(self.enqueue)
        logger.info("[Realtime] Hub attached to store %s", store.db_path)

    def detach(self) -> None:
        if self._store is not None:
            self._store.remove_listener(self.enqueue)
            self._store = None

    @property
    def store(self) -> ChatStore:
        return self._store or ChatStore.get_instance()

    def enqueue(self, event: ChangeEvent) -> None:
        self._queue.append(event)

    @property
    def pending(self) -> int:
        return len(self._queue)

    # =========================================================================
    # Connections & subscriptions
    # =========================================================================

    def connect(self, websocket: WebSocket, user_id: str) -> ClientConnection:
        connection = ClientConnection(websocket=websocket, user_id=user_id)
        self.connections[websocket] = connection
        logger.info("[Realtime] User %s connected (%d open)", user_id, len(self.connections))
        return connection

    def disconnect(self, websocket: WebSocket) -> Optional[ClientConnection]:
        connection = self.connections.pop(websocket, None)
        if connection is not None:
            logger.info(
                "[Realtime] User %s disconnected (%d subscriptions dropped)",
                connection.user_id, len(connection.subscriptions),
            )
        return connection

    def subscribe(
        self,
        websocket: WebSocket,
        channel: str,
        table: str,
        event: str = "*",
        row_filter: Optional[str] = None,
    ) -> Subscription:
        """Add (or replace) the connection's subscription on ``channel``.

        Raises:
            KeyError: The websocket is not connected.
            ValueError: Unknown table or event, malformed filter, or the
                connection already holds the maximum number of subscriptions.
        """
        connection = self.connections[websocket]
        _require_text("channel", channel)
        _require_text("table", table)
        _require_text("event", event)
        if row_filter is not None and not isinstance(row_filter, str):
            raise ValueError("filter must be a string")
        published = self.published_tables if self.published_tables is not None else sorted(self.store.published_tables)
        if table not in published:
            raise ValueError(f"Table {table!r} is not published for realtime")
        if event not in EVENT_TYPES:
            raise ValueError(f"Unsupported event {event!r}; expected one of {', '.join(EVENT_TYPES)}")
        parsed = parse_filter(row_filter)
        if channel not in connection.subscriptions and len(connection.subscriptions) >= self.max_subscriptions:
            raise ValueError(f"Too many subscriptions (limit {self.max_subscriptions})")

        subscription = Subscription(
            id=str(uuid.uuid4()),
            channel=channel,
            table=table,
            event=event,
            row_filter=parsed,
        )
        connection.subscriptions[channel] = subscription
        logger.info(
            "[Realtime] %s subscribed to %s %s%s",
            connection.user_id, event, table, f" ({parsed})" if parsed else "",
        )
        return subscription

    def unsubscribe(self, websocket: WebSocket, channel: str) -> bool:
        """Drop the subscription on ``channel``; False when there was none.

        Raises:
            ValueError: ``channel`` is not a non-empty string.
        """
        _require_text("channel", channel)
        connection = self.connections.get(websocket)
        if connection is None:
            return False
        return connection.subscriptions.pop(channel, None) is not None

    # =========================================================================
    # Delivery
    # =========================================================================

    async def flush(self) -> None:
        """Deliver every queued event, oldest first."""
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            while self._queue:
                event = self._queue.popleft()
                try:
                    await self.dispatch(event)
                except Exception:
                    logger.exception("[Realtime] Failed to dispatch %s on %s", event.eventType, event.table)

    async def dispatch(self, event: ChangeEvent) -> int:
        """Send ``event`` to every subscriber allowed to see it.

        Returns:
            Number of frames sent successfully.
        """
        deliveries: List[Tuple[WebSocket, dict]] = []
        for connection in list(self.connections.values()):
            matching = [s for s in connection.subscriptions.values() if s.matches(event)]
            if not matching:
                continue
            if not self.can_see(connection.user_id, event):
                continue
            for subscription in matching:
                deliveries.append((connection.websocket, self._frame(subscription, event)))

        if not deliveries:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(ws, frame) for ws, frame in deliveries],
            return_exceptions=True
        )

        failed = {ws for (ws, _), ok in zip(deliveries, results) if ok is not True}
        for ws in failed:
            self.disconnect(ws)
        return sum(1 for ok in results if ok is True)

    def can_see(self, user_id: str, event: ChangeEvent) -> bool:
        ctx = self.engine.context(self.store, user_id)
        return self.engine.can_select(ctx, event.table, event.record)

    @staticmethod
    def _frame(subscription: Subscription, event: ChangeEvent) -> dict:
        return {
            "type": "postgres_changes",
            "channel": subscription.channel,
            "subscriptionId": subscription.id,
            "payload": event.to_payload(),
        }

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug("[Realtime] Failed to send to connection: %s", e)
            return False


# =============================================================================
# Process-wide instance
# =============================================================================

_hub: Optional[RealtimeHub] = None


def get_hub() -> RealtimeHub:
    global _hub
    if _hub is None:
        _hub = RealtimeHub()
    return _hub


def set_hub(hub: Optional[RealtimeHub]) -> None:
    """Replace the process-wide hub (None creates a fresh one on next access)."""
    global _hub
    if _hub is not None and _hub is not hub:
        _hub.detach()
    _hub = hub
