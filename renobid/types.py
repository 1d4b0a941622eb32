"""
Shared helpers for renobid models.

Documents store datetimes as ISO-8601 strings and money as decimal strings;
these helpers convert in both directions.
"""

from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

DEFAULT_CURRENCY = "VND"

# VND has no minor unit
MONEY_QUANTUM = Decimal("1")


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass a datetime through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a stored or user-supplied amount to Decimal."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def enum_value(value: Any) -> Any:
    """Unwrap an Enum member to its value; pass anything else through."""
    return getattr(value, "value", value)


class DocumentModel:
    """Mixin giving dataclass models a stored-document representation.

    Subclasses list their datetime and money fields in ``DATETIME_FIELDS``
    and ``MONEY_FIELDS``; everything else is stored as-is, with enums
    unwrapped to their values.
    """

    DATETIME_FIELDS = ()
    MONEY_FIELDS = ()

    def to_dict(self) -> dict:
        data = {}
        for f in dataclass_fields(self):
            value = getattr(self, f.name)
            if f.name in self.DATETIME_FIELDS:
                value = format_datetime(value)
            elif f.name in self.MONEY_FIELDS:
                value = format_money(value)
            elif isinstance(value, list):
                value = [dict(v) if isinstance(v, dict) else v for v in value]
            else:
                value = enum_value(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict):
        kwargs = {}
        for f in dataclass_fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name in cls.DATETIME_FIELDS:
                value = parse_datetime(value)
            elif f.name in cls.MONEY_FIELDS:
                value = to_decimal(value)
            elif isinstance(value, list):
                value = list(value)
            kwargs[f.name] = value
        return cls(**kwargs)


def serialize_changes(changes: dict) -> dict:
    """Convert a partial update to its stored form."""
    data = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        else:
            value = enum_value(value)
        data[key] = value
    return data
