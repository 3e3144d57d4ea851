"""Pydantic schemas for rooms."""
from typing import Optional

from pydantic import BaseModel, Field


class RoomCreate(BaseModel):
    """Request body for creating a room."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_private: bool = Field(default=False)


class RoomUpdate(BaseModel):
    """Request body for updating a room (all fields optional)."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_private: Optional[bool] = None
