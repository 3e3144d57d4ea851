"""Room messages, read receipts and typing indicators for one caller."""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from roomchat.config import RealtimeSettings, RoomSettings
from roomchat.db.session import UserSession
from roomchat.db.store import parse_timestamp

logger = logging.getLogger(__name__)

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100


def clean_content(content: str, max_length: int) -> str:
    """Trim message content and enforce the length limits.

    Raises:
        ValueError: Content is blank or longer than ``max_length``.
    """
    content = (content or "").strip()
    if not content:
        raise ValueError("Message content must not be empty")
    if len(content) > max_length:
        raise ValueError(f"Message content must be at most {max_length} characters")
    return content


class MessageService:
    def __init__(
        self,
        session: UserSession,
        rooms: Optional[RoomSettings] = None,
        realtime: Optional[RealtimeSettings] = None,
    ) -> None:
        self.session = session
        self.rooms = rooms or RoomSettings()
        self.realtime = realtime or RealtimeSettings()

    # =========================================================================
    # Messages
    # =========================================================================

    def history(
        self,
        room_id: str,
        before: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[dict], bool]:
        """Get a page of a room's messages, oldest first.

        Args:
            room_id: The room.
            before: ISO timestamp cursor; only older messages are returned.
            limit: Page size (capped at MAX_PAGE_SIZE).

        Returns:
            Tuple of (messages, has_more).
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        where = {"room_id": room_id}
        if before is not None:
            where["created_at__lt"] = parse_timestamp(before)
        newest_first = self.session.select(
            "messages", where, order_by="created_at", descending=True, limit=limit + 1
        )
        has_more = len(newest_first) > limit
        return list(reversed(newest_first[:limit])), has_more

    def send(self, room_id: str, content: str, user_email: str) -> dict:
        message = self.session.insert("messages", {
            "content": clean_content(content, self.rooms.max_message_length),
            "user_id": self.session.user_id,
            "user_email": user_email,
            "room_id": room_id,
        })
        logger.info("[messages] %s posted %s in room %s", self.session.user_id, message["id"], room_id)
        return message

    # =========================================================================
    # Read Receipts
    # =========================================================================

    def mark_read(self, message_id: str) -> dict:
        """Record that the caller read a message. Marking twice keeps the first receipt."""
        receipt = self.session.insert(
            "message_reads",
            {"message_id": message_id, "user_id": self.session.user_id},
            on_conflict="nothing",
        )
        if receipt is None:
            receipt = self.session.store.select_one(
                "message_reads", {"message_id": message_id, "user_id": self.session.user_id}
            )
        return receipt

    def reads(self, message_id: str) -> List[dict]:
        return self.session.select("message_reads", {"message_id": message_id}, order_by="read_at")

    # =========================================================================
    # Typing Indicators
    # =========================================================================

    def set_typing(self, room_id: str, is_typing: bool = True) -> dict:
        return self.session.insert(
            "typing_indicators",
            {
                "room_id": room_id,
                "user_id": self.session.user_id,
                "is_typing": is_typing,
                "last_updated": self.session.store.now(),
            },
            on_conflict="update",
        )

    def typing(self, room_id: str) -> List[dict]:
        """Users currently typing in a room; rows older than the TTL are stale."""
        cutoff = self.session.store.now() - timedelta(seconds=self.realtime.typing_ttl_seconds)
        return self.session.select(
            "typing_indicators",
            {"room_id": room_id, "is_typing": True, "last_updated__gte": cutoff},
            order_by="last_updated",
        )
