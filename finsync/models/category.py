"""
Category Model.

``display_order`` is a local-only preference (drag & drop ordering); it
is never sent to the server and pull-merge leaves it alone.
"""

from __future__ import annotations

from typing import ClassVar

from pydantic import Field, field_validator

from finsync.models.entity import SyncedEntity


class Category(SyncedEntity):
    """Represents a user-defined spending category."""

    SERVER_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "color_hex",
        "icon_name",
        "is_active",
    )
    EDITABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"name", "color_hex", "icon_name", "is_active"}
    )

    name: str = Field(min_length=1, max_length=100)
    color_hex: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    icon_name: str = Field(default="tag", min_length=1)
    is_active: bool = True
    display_order: int = Field(default=0, ge=0)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls: type[Category], v: object) -> object:
        return v.strip() if isinstance(v, str) else v
