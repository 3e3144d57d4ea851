"""Pydantic schemas for room messages."""
from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    """Request body for posting a message; content is trimmed server-side."""
    content: str = Field(..., description="Message content")


class TypingUpdate(BaseModel):
    is_typing: bool = Field(default=True)
