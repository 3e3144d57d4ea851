"""Pydantic schemas for user profiles."""
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ProfileUpdate(BaseModel):
    """Request body for updating the caller's profile (all fields optional)."""
    username: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar_url: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("username")
    @classmethod
    def _not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("username must not be blank")
        return value.strip() if value is not None else None
