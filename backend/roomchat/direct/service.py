"""Direct conversations and messages for one caller."""
import logging
from typing import Dict, List, Optional

from roomchat.config import RoomSettings
from roomchat.db.session import UserSession
from roomchat.db.store import normalize_uuid
from roomchat.errors import InvalidTextRepresentation
from roomchat.messages.service import clean_content

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
INVALID_USER_ID = "Invalid user ID format. Please enter a valid UUID."
USER_NOT_FOUND = "User not found. Please check the ID and try again."
CANNOT_MESSAGE_SELF = "You cannot start a conversation with yourself."


class ConversationError(Exception):
    """A conversation request the caller has to correct."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DirectService:
    def __init__(self, session: UserSession, rooms: Optional[RoomSettings] = None) -> None:
        self.session = session
        self.rooms = rooms or RoomSettings()

    # =========================================================================
    # Conversations
    # =========================================================================

    def _with_other_users(self, conversations: List[dict]) -> List[dict]:
        if not conversations:
            return []
        participants = self.session.select(
            "direct_participants",
            {"conversation_id__in": [c["id"] for c in conversations], "user_id__ne": self.session.user_id},
        )
        other_by_conversation: Dict[str, str] = {}
        for participant in participants:
            other_by_conversation.setdefault(participant["conversation_id"], participant["user_id"])
        profiles = self.session.select("profiles", {"id__in": sorted(set(other_by_conversation.values()))})
        names = {p["id"]: p.get("username") for p in profiles}

        result = []
        for conversation in conversations:
            item = {
                "id": conversation["id"],
                "created_at": conversation["created_at"],
                "updated_at": conversation["updated_at"],
            }
            other_id = other_by_conversation.get(conversation["id"])
            if other_id is not None:
                item["otherUser"] = {"id": other_id, "username": names.get(other_id) or UNKNOWN_USER}
            result.append(item)
        return result

    def list_conversations(self) -> List[dict]:
        """The caller's conversations, most recently active first."""
        conversations = self.session.select("direct_conversations", order_by="updated_at", descending=True)
        return self._with_other_users(conversations)

    def start_conversation(self, other_user_id: str) -> dict:
        """Find or create the caller's conversation with another user.

        Raises:
            ConversationError: The id is not a UUID, names no known user, or
                is the caller's own id.
        """
        try:
            other_user_id = normalize_uuid((other_user_id or "").strip())
        except InvalidTextRepresentation:
            raise ConversationError(INVALID_USER_ID) from None
        if other_user_id == self.session.user_id:
            raise ConversationError(CANNOT_MESSAGE_SELF)
        if self.session.maybe_one("profiles", {"id": other_user_id}) is None:
            raise ConversationError(USER_NOT_FOUND, status_code=404)

        conversation_id = self.session.find_or_create_conversation(other_user_id)
        conversation = self.session.select_one("direct_conversations", {"id": conversation_id})
        return self._with_other_users([conversation])[0]

    # =========================================================================
    # Messages
    # =========================================================================

    def messages(self, conversation_id: str) -> List[dict]:
        return self.session.select("direct_messages", {"conversation_id": conversation_id}, order_by="created_at")

    def send(self, conversation_id: str, content: str) -> dict:
        message = self.session.insert("direct_messages", {
            "conversation_id": conversation_id,
            "sender_id": self.session.user_id,
            "content": clean_content(content, self.rooms.max_message_length),
        })
        logger.info("[direct] %s sent %s in conversation %s", self.session.user_id, message["id"], conversation_id)
        return message
