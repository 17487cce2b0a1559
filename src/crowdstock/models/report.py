"""Entity keys, availability statuses and crowd reports."""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import Field, ValidationError, field_validator, model_serializer, model_validator

from crowdstock._constants import DEFAULT_BASE_CONFIDENCE, ENTITY_KEY_SEPARATOR, STATUS_ALIASES
from crowdstock.exceptions import InvalidEntityKey
from crowdstock.models._base import CrowdStockBaseModel, UtcDatetime, utcnow


class AvailabilityStatus(StrEnum):
    """The two mutually exclusive states a report can claim."""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"

    @property
    def opposite(self) -> AvailabilityStatus:
        if self is AvailabilityStatus.AVAILABLE:
            return AvailabilityStatus.UNAVAILABLE
        return AvailabilityStatus.AVAILABLE


class PublicStatus(StrEnum):
    """Status as surfaced to consumers; ``unknown`` hides uninformative beliefs."""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, status: AvailabilityStatus, *, visible: bool) -> PublicStatus:
        if not visible:
            return cls.UNKNOWN
        return cls(status.value)


def normalize_status(value: Any) -> Any:
    """Map wire names (``in_stock`` / ``out_of_stock``) onto canonical values."""
    if isinstance(value, str):
        text = value.strip().lower()
        return STATUS_ALIASES.get(text, text)
    return value


class EntityKey(CrowdStockBaseModel):
    """Composite identifier for a (location, item) pair.

    The canonical string form is ``"<location_id>:<item_id>"``.  Location
    ids may not contain the separator; item ids may.
    """

    location_id: str
    item_id: str

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, values: Any) -> Any:
        if isinstance(values, str):
            location_id, sep, item_id = values.partition(ENTITY_KEY_SEPARATOR)
            if not sep:
                raise ValueError(f"entity key must look like 'location{ENTITY_KEY_SEPARATOR}item', got {values!r}")
            return {"location_id": location_id, "item_id": item_id}
        return values

    @field_validator("location_id", "item_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("entity key parts must be non-empty")
        return value

    @field_validator("location_id")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if ENTITY_KEY_SEPARATOR in value:
            raise ValueError(f"location_id may not contain {ENTITY_KEY_SEPARATOR!r}")
        return value

    @classmethod
    def parse(cls, value: EntityKey | str) -> EntityKey:
        """Accept an :class:`EntityKey` or its canonical string form.

        Raises :class:`InvalidEntityKey` for malformed values.
        """
        if isinstance(value, EntityKey):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as exc:
            raise InvalidEntityKey(f"Invalid entity key {value!r}: {exc}", value=str(value)) from exc

    def __str__(self) -> str:
        return f"{self.location_id}{ENTITY_KEY_SEPARATOR}{self.item_id}"

    @model_serializer(mode="plain")
    def _serialize(self) -> str:
        return str(self)


class Report(CrowdStockBaseModel):
    """An immutable crowd-submitted availability fact.

    Parameters
    ----------
    entity_key : EntityKey
        The (location, item) pair the report is about.
    status : AvailabilityStatus
        Claimed availability.
    base_confidence : float
        Trust at submission time, within ``[0, 1]``.  The observed
        submission form always sends ``1.0``.
    submitted_at : datetime
        Submission time (UTC).  Defaults to now.
    submitter_token : str
        Opaque token used only for de-duplication.  Empty disables the
        duplicate check for this report.
    report_id : str
        Opaque identifier, generated when absent.
    """

    entity_key: EntityKey
    status: AvailabilityStatus
    base_confidence: float = Field(default=DEFAULT_BASE_CONFIDENCE, ge=0.0, le=1.0, allow_inf_nan=False)
    submitted_at: UtcDatetime = Field(default_factory=utcnow)
    submitter_token: str = ""
    report_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return normalize_status(value)
