"""
Server Record DTOs.

Shapes returned by the remote gateway.  Keys are normalised to
snake_case on the way in, so camelCase REST payloads and snake_case
Supabase rows parse identically.  Dates arrive as ISO-8601 strings and
amounts as decimal strings (floats are tolerated via their shortest
repr).
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import date as date_type
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from finsync.models.enums import TransactionType
from finsync.models.transaction import parse_amount, parse_date
from finsync.utils.string_helpers import normalize_keys

__all__ = ["NestedCategory", "ServerCategory", "ServerRecord", "ServerTransaction"]


class _NormalizedModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls: type[_NormalizedModel], data: object) -> object:
        if isinstance(data, dict):
            return normalize_keys(data)
        return data


class ServerRecord(_NormalizedModel):
    """Fields common to every server record: the canonical server ``id``.

    Abstract: pydantic's model metaclass is an ``ABCMeta``, so only the
    concrete record types can be instantiated.
    """

    id: str = Field(min_length=1)
    user_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_string(cls: type[ServerRecord], v: object) -> object:
        # Integer primary keys are normalised to strings.
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v

    @abstractmethod
    def entity_fields(self) -> dict[str, object]:
        """Server-authoritative fields keyed by local entity field name."""


class NestedCategory(_NormalizedModel):
    """Category summary embedded in a transaction response."""

    id: str = Field(min_length=1)
    name: str
    color_hex: str
    icon_name: str = "tag"


class ServerCategory(ServerRecord):
    """A category as the server knows it."""

    name: str
    color_hex: str
    icon_name: str = "tag"
    is_active: bool = True

    @field_validator("icon_name", mode="before")
    @classmethod
    def _default_icon(cls: type[ServerCategory], v: object) -> object:
        return "tag" if v is None else v

    def entity_fields(self) -> dict[str, object]:
        return {
            "name": self.name,
            "color_hex": self.color_hex,
            "icon_name": self.icon_name,
            "is_active": self.is_active,
        }


class ServerTransaction(ServerRecord):
    """A transaction as the server knows it."""

    category_id: Optional[str] = None
    type: TransactionType
    amount: Decimal
    date: date_type
    description: str
    ai_confidence: Optional[float] = None
    ai_justification: Optional[str] = None
    needs_user_review: Optional[bool] = None
    category: Optional[NestedCategory] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls: type[ServerTransaction], v: object) -> Decimal:
        return parse_amount(v)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls: type[ServerTransaction], v: object) -> object:
        return parse_date(v)

    def entity_fields(self) -> dict[str, object]:
        category_id = self.category_id
        if category_id is None and self.category is not None:
            category_id = self.category.id
        return {
            "category_id": category_id,
            "type": self.type,
            "amount": self.amount,
            "date": self.date,
            "description": self.description,
            "ai_confidence": self.ai_confidence,
            "ai_justification": self.ai_justification,
            "needs_user_review": bool(self.needs_user_review),
        }