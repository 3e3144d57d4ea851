"""Pydantic schemas for direct messaging."""
from pydantic import BaseModel, Field


class ConversationStart(BaseModel):
    """Request body for starting (or reopening) a conversation."""
    user_id: str = Field(..., description="The other user's id")


class DirectMessageCreate(BaseModel):
    content: str = Field(..., description="Message content")
