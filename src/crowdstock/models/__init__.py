"""Data models for reports, aggregates and status views."""

from crowdstock.models._base import CrowdStockBaseModel, UtcDatetime, ensure_utc, parse_timestamp
from crowdstock.models.aggregate import Aggregate, RecentReport, ReportStats, StatusView
from crowdstock.models.report import AvailabilityStatus, EntityKey, PublicStatus, Report, normalize_status

__all__ = [
    "Aggregate",
    "AvailabilityStatus",
    "CrowdStockBaseModel",
    "EntityKey",
    "PublicStatus",
    "RecentReport",
    "Report",
    "ReportStats",
    "StatusView",
    "UtcDatetime",
    "ensure_utc",
    "normalize_status",
    "parse_timestamp",
]
