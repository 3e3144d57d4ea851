"""DuckDB-backed storage for rooms, messages and direct conversations."""
from .changes import ChangeEvent
from .session import UserSession
from .store import ChatStore

__all__ = ["ChangeEvent", "ChatStore", "UserSession"]
