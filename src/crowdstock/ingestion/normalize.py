"""Normalization of inbound report payloads.

All submission paths (HTTP bodies, form posts, database rows from the
observed client) go through :func:`build_report`, which is the only place
pydantic validation errors are translated into :class:`InvalidReport`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from crowdstock._redact import redact_report
from crowdstock.exceptions import InvalidReport
from crowdstock.models.report import AvailabilityStatus, EntityKey, Report

_logger = logging.getLogger(__name__)

# Column names used by the observed client's ``reports`` table.
_FIELD_ALIASES: dict[str, str] = {
    "pharmacy_id": "location_id",
    "medication_id": "item_id",
    "user_hash": "submitter_token",
    "confidence": "base_confidence",
    "created_at": "submitted_at",
    "id": "report_id",
}

# Joined relations and display-only columns that carry no report data.
_IGNORED_FIELDS: frozenset[str] = frozenset({"pharmacy", "medication"})


def is_meaningful(value: Any) -> bool:
    """Return True if the value should be passed on to validation.

    Missing values are dropped so model defaults apply instead.
    """
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return not (isinstance(value, float) and math.isnan(value))


def normalize_report_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Map aliases onto canonical field names and fold split keys together."""
    data: dict[str, Any] = {}
    for key, value in payload.items():
        name = _FIELD_ALIASES.get(key, key)
        if name in _IGNORED_FIELDS:
            continue
        if name == "submitter_token" and value is not None:
            # Tokens are opaque; keep empty strings as "no token".
            data[name] = str(value)
            continue
        if is_meaningful(value):
            data[name] = value

    location_id = data.pop("location_id", None)
    item_id = data.pop("item_id", None)
    if "entity_key" not in data and (location_id is not None or item_id is not None):
        data["entity_key"] = {"location_id": location_id or "", "item_id": item_id or ""}
    return data


def _first_error_field(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ""
    loc = errors[0].get("loc") or ()
    return str(loc[0]) if loc else ""


def build_report(payload: Report | Mapping[str, Any], *, now: datetime | None = None) -> Report:
    """Validate *payload* into a :class:`Report`.

    Raises
    ------
    InvalidReport
        When the payload cannot describe a valid report.
    """
    if isinstance(payload, Report):
        return validate_report(payload)
    if not isinstance(payload, Mapping):
        raise InvalidReport(f"Report payload must be a mapping, got {type(payload).__name__}")

    data = normalize_report_payload(payload)
    if now is not None:
        data.setdefault("submitted_at", now)
    try:
        return Report.model_validate(data)
    except ValidationError as exc:
        _logger.debug("Rejected report payload %s: %s", redact_report(dict(payload)), exc)
        raise InvalidReport(f"Invalid report: {exc}", field=_first_error_field(exc)) from exc


def validate_report(report: Report) -> Report:
    """Re-check invariants on an already-built report.

    Reports built with ``Report.model_construct`` skip validation, so the
    engine never trusts a ``Report`` instance blindly.
    """
    if not isinstance(report.entity_key, EntityKey):
        raise InvalidReport("entity_key must be an EntityKey", field="entity_key")
    try:
        AvailabilityStatus(report.status)
    except ValueError as exc:
        raise InvalidReport(f"Unknown status {report.status!r}", field="status") from exc
    confidence = report.base_confidence
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or math.isnan(confidence):
        raise InvalidReport(f"base_confidence must be a number, got {confidence!r}", field="base_confidence")
    if not 0.0 <= confidence <= 1.0:
        raise InvalidReport(f"base_confidence must be within [0, 1], got {confidence}", field="base_confidence")
    if not isinstance(report.submitted_at, datetime) or report.submitted_at.tzinfo is None:
        raise InvalidReport("submitted_at must be a timezone-aware datetime", field="submitted_at")
    return report
