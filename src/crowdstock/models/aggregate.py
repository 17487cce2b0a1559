"""Reconciled beliefs and the read-side views projected from them."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from crowdstock.models._base import CrowdStockBaseModel, UtcDatetime
from crowdstock.models.report import AvailabilityStatus, EntityKey, PublicStatus, Report


class Aggregate(CrowdStockBaseModel):
    """Current reconciled belief for one entity key.

    ``confidence`` is the reconciled confidence as of ``last_report_at``;
    readers re-decay it to their own point in time.
    """

    entity_key: EntityKey
    status: AvailabilityStatus
    confidence: float = Field(ge=0.0, le=1.0)
    last_report_at: UtcDatetime
    sample_count: int = Field(default=1, ge=0)


class StatusView(CrowdStockBaseModel):
    """Projected, consumer-facing status for one entity key."""

    entity_key: EntityKey
    status: PublicStatus
    confidence: float = Field(ge=0.0, le=1.0)
    visible: bool
    last_report_at: UtcDatetime | None = None
    sample_count: int = 0

    @classmethod
    def unknown(cls, entity_key: EntityKey) -> StatusView:
        return cls(entity_key=entity_key, status=PublicStatus.UNKNOWN, confidence=0.0, visible=False)


class RecentReport(CrowdStockBaseModel):
    """A single report with its own confidence decayed to the query time."""

    report: Report
    confidence: float = Field(ge=0.0, le=1.0)
    reliable: bool


class ReportStats(CrowdStockBaseModel):
    """Counters over the recent reports feed."""

    total_reports: int = 0
    reports_today: int = 0
    reliable_available: int = 0
    reliable_unavailable: int = 0
    as_of: datetime
