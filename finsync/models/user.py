"""
User Model.

The authenticated account that owns local records.  Only the id is used
by the sync core (as ``owner_id``); the rest is carried for display.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    """Represents the signed-in user."""

    id: str = Field(min_length=1)
    email: str = ""
    full_name: Optional[str] = None

    model_config = {"frozen": True}
