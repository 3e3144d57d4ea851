"""Row change events produced by the store for the realtime feed."""
from typing import Literal

from pydantic import BaseModel, Field

EventType = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEvent(BaseModel):
    """A committed change to one row.

    Attributes:
        table: Table the row belongs to.
        eventType: INSERT, UPDATE or DELETE.
        new: Row after the change (empty for DELETE).
        old: Row before the change (empty for INSERT).
        commit_timestamp: ISO-8601 UTC time the change was committed.
    """
    table: str
    eventType: EventType
    new: dict = Field(default_factory=dict)
    old: dict = Field(default_factory=dict)
    commit_timestamp: str
    schema_name: str = "public"

    @property
    def record(self) -> dict:
        """The row a subscriber's read permission is checked against."""
        return self.old if self.eventType == "DELETE" else self.new

    def to_payload(self) -> dict:
        return {
            "schema": self.schema_name,
            "table": self.table,
            "eventType": self.eventType,
            "new": self.new,
            "old": self.old,
            "commit_timestamp": self.commit_timestamp,
        }
