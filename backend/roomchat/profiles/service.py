"""Profile reads and updates for one caller."""
import logging
from typing import List, Optional

from roomchat.db.session import UserSession
from roomchat.db.store import normalize_uuid

logger = logging.getLogger(__name__)


class ProfileService:
    def __init__(self, session: UserSession) -> None:
        self.session = session

    def get(self, user_id: str) -> Optional[dict]:
        return self.session.maybe_one("profiles", {"id": user_id})

    def list(self, user_ids: List[str]) -> List[dict]:
        if not user_ids:
            return []
        ids = [normalize_uuid(user_id) for user_id in user_ids]
        return self.session.select("profiles", {"id__in": ids}, order_by="username")

    def update_own(self, username: Optional[str] = None, avatar_url: Optional[str] = None) -> Optional[dict]:
        """Update the caller's profile; returns None when the caller has no profile."""
        changes = {}
        if username is not None:
            changes["username"] = username.strip()
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url
        if not changes:
            return self.get(self.session.user_id)
        changes["updated_at"] = self.session.store.now()
        updated = self.session.update("profiles", {"id": self.session.user_id}, changes)
        if not updated:
            return None
        logger.info("[profiles] Updated profile %s (%s)", self.session.user_id, ", ".join(sorted(changes)))
        return updated[0]
