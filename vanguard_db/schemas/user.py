from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserDto(BaseModel):
    """Read-side projection of UserEntity."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Store-generated identifier")
    name: str = Field(..., description="Display name")
    email: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")


class UserCreate(BaseModel):
    """Payload for creating a user."""
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    remark: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)


class UserRename(BaseModel):
    """Payload for renaming a user."""
    name: str = Field(..., min_length=1, max_length=100)
