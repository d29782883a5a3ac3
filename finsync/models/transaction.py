"""
Transaction Model.

A single expense or income entry.  ``amount`` is an exact ``Decimal``;
floats are accepted on input only through their shortest string form so
no binary rounding artefacts reach the store or the wire.
"""

from __future__ import annotations

import math
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from finsync.models.entity import SyncedEntity
from finsync.models.enums import TransactionType


def parse_amount(value: object) -> Decimal:
    """Coerce *value* to a finite ``Decimal``.

    Raises:
        ValueError: If the value is not a number or numeric string.
    """
    if isinstance(value, bool):
        raise ValueError("amount must be a number, not a boolean")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("amount must be finite")
        amount = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip().replace(",", "."))
        except InvalidOperation as exc:
            raise ValueError(f"amount {value!r} is not a valid number") from exc
    else:
        raise ValueError(f"amount of type {type(value).__name__} is not supported")

    if not amount.is_finite():
        raise ValueError("amount must be finite")
    return amount


def parse_date(value: object) -> object:
    """Accept ``YYYY-MM-DD`` or a full ISO-8601 timestamp string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return value


class Transaction(SyncedEntity):
    """Represents a financial transaction record."""

    SERVER_FIELDS: ClassVar[tuple[str, ...]] = (
        "category_id",
        "type",
        "amount",
        "date",
        "description",
        "ai_confidence",
        "ai_justification",
        "needs_user_review",
    )
    EDITABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"category_id", "type", "amount", "date", "description"}
    )

    # Server rows are stored as sent; user input is checked by TransactionInput.
    category_id: Optional[str] = None
    type: TransactionType
    amount: Decimal
    date: date_type
    description: str = Field(max_length=500)

    # Server-side categorization annotations
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    ai_justification: Optional[str] = None
    needs_user_review: bool = False

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls: type[Transaction], v: object) -> Decimal:
        return parse_amount(v)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls: type[Transaction], v: object) -> object:
        return parse_date(v)

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls: type[Transaction], v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @property
    def month(self) -> str:
        """``YYYY-MM`` bucket used by month listings."""
        return self.date.strftime("%Y-%m")


class TransactionInput(BaseModel):
    """Values a user enters for a new or edited transaction.

    Stricter than :class:`Transaction`: an amount entered by hand must not
    be negative and a description must not be blank.  Only the supplied
    values are checked; other keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    amount: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, min_length=1)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls: type[TransactionInput], v: object) -> Optional[Decimal]:
        return None if v is None else parse_amount(v)

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls: type[TransactionInput], v: object) -> object:
        return v.strip() if isinstance(v, str) else v
