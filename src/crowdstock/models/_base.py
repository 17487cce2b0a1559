"""Base model and shared field types for crowdstock models.

Every model inherits from :class:`CrowdStockBaseModel` which provides:

* immutability (``frozen=True``) so instances can be shared between
  threads and swapped atomically by the ledger,
* ``extra="forbid"`` so typos in inbound payloads fail loudly,
* whitespace stripping for string fields.

Timestamps use :data:`UtcDatetime`, which coerces naive datetimes,
ISO-8601 strings and epoch numbers (seconds **or** milliseconds) into
timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> Any:
    """Coerce epoch numbers, ISO strings and naive datetimes to aware UTC.

    Unsupported values are returned unchanged so pydantic reports them.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return value
    return value


UtcDatetime = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces timestamps to timezone-aware UTC datetimes."""


class CrowdStockBaseModel(BaseModel):
    """Immutable base model for reports, aggregates and views."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )
