"""Room operations performed as one caller.

Visibility and write permissions come from the row-level security
policies; this service only sequences the inserts the chat UI performs.
"""
import logging
from typing import List, Optional

from roomchat.config import RoomSettings
from roomchat.db.session import UserSession

logger = logging.getLogger(__name__)


class RoomService:
    def __init__(self, session: UserSession, settings: Optional[RoomSettings] = None) -> None:
        self.session = session
        self.settings = settings or RoomSettings()

    def list_rooms(self) -> List[dict]:
        """Rooms visible to the caller, oldest first."""
        return self.session.select("rooms", order_by="created_at")

    def create_room(self, name: str, description: Optional[str] = None, is_private: bool = False) -> dict:
        """Create a room and join the caller to it in one transaction."""
        with self.session.store.transaction():
            room = self.session.insert("rooms", {
                "name": name.strip(),
                "description": description,
                "created_by": self.session.user_id,
                "is_private": is_private,
            })
            self.join(room["id"])
        logger.info("[rooms] %s created room %s (%s)", self.session.user_id, room["id"], room["name"])
        return room

    def bootstrap(self) -> List[dict]:
        """Return the caller's rooms, creating the default room when there are none."""
        rooms = self.list_rooms()
        if rooms:
            return rooms
        logger.info("[rooms] No rooms visible to %s, creating %r", self.session.user_id, self.settings.default_room_name)
        self.create_room(self.settings.default_room_name, self.settings.default_room_description)
        return self.list_rooms()

    def update_room(self, room_id: str, **changes) -> Optional[dict]:
        """Update a room the caller created. Returns None when nothing was updatable."""
        values = {column: value for column, value in changes.items() if value is not None}
        if "name" in values:
            values["name"] = values["name"].strip()
        if not values:
            return self.session.maybe_one("rooms", {"id": room_id})
        updated = self.session.update("rooms", {"id": room_id}, values)
        return updated[0] if updated else None

    def join(self, room_id: str) -> dict:
        """Join a room; joining twice returns the existing membership."""
        membership = self.session.insert(
            "room_members",
            {"room_id": room_id, "user_id": self.session.user_id},
            on_conflict="nothing",
        )
        if membership is None:
            membership = self.session.store.select_one(
                "room_members", {"room_id": room_id, "user_id": self.session.user_id}
            )
        return membership

    def leave(self, room_id: str) -> bool:
        removed = self.session.delete("room_members", {"room_id": room_id, "user_id": self.session.user_id})
        if removed:
            logger.info("[rooms] %s left room %s", self.session.user_id, room_id)
        return bool(removed)

    def members(self, room_id: str) -> List[dict]:
        return self.session.select("room_members", {"room_id": room_id}, order_by="joined_at")
