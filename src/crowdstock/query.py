"""Read-only status queries.

Confidence is re-decayed at read time, so staleness shows up even when no
new reports arrive.  Unknown entities are never an error: they resolve to
an ``unknown`` view with zero confidence.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from crowdstock._constants import DECAY_RATE_PER_HOUR, RECENT_REPORTS_LIMIT, VISIBILITY_THRESHOLD
from crowdstock.config import EngineConfig
from crowdstock.models._base import ensure_utc
from crowdstock.models.aggregate import Aggregate, RecentReport, ReportStats, StatusView
from crowdstock.models.report import AvailabilityStatus, EntityKey, PublicStatus
from crowdstock.state.ledger import EntityLedger
from crowdstock.state.policy import decay, hours_between, is_visible


class QueryService:
    """Point-in-time projections over an :class:`EntityLedger`."""

    def __init__(
        self,
        ledger: EntityLedger,
        *,
        visibility_threshold: float = VISIBILITY_THRESHOLD,
        decay_rate_per_hour: float = DECAY_RATE_PER_HOUR,
    ) -> None:
        self._ledger = ledger
        self._threshold = visibility_threshold
        self._decay_rate = decay_rate_per_hour

    @classmethod
    def from_config(cls, ledger: EntityLedger, config: EngineConfig) -> QueryService:
        return cls(
            ledger,
            visibility_threshold=config.visibility_threshold,
            decay_rate_per_hour=config.decay_rate_per_hour,
        )

    @property
    def visibility_threshold(self) -> float:
        return self._threshold

    def _as_of(self, as_of: datetime | None) -> datetime:
        return ensure_utc(as_of) if as_of is not None else self._ledger.now()

    def _view(self, key: EntityKey, aggregate: Aggregate | None) -> StatusView:
        if aggregate is None:
            return StatusView.unknown(key)
        visible = is_visible(aggregate.confidence, self._threshold)
        return StatusView(
            entity_key=key,
            status=PublicStatus.from_status(aggregate.status, visible=visible),
            confidence=aggregate.confidence,
            visible=visible,
            last_report_at=aggregate.last_report_at,
            sample_count=aggregate.sample_count,
        )

    def status_of(self, entity_key: EntityKey | str, as_of: datetime | None = None) -> StatusView:
        """Project one entity's status to *as_of* (defaults to now)."""
        key = EntityKey.parse(entity_key)
        return self._view(key, self._ledger.peek(key, self._as_of(as_of)))

    def status_of_many(
        self,
        entity_keys: Iterable[EntityKey | str],
        as_of: datetime | None = None,
    ) -> dict[EntityKey, StatusView]:
        """Project several entities to the same instant, independently per key."""
        instant = self._as_of(as_of)
        views: dict[EntityKey, StatusView] = {}
        for entity_key in entity_keys:
            key = EntityKey.parse(entity_key)
            views[key] = self._view(key, self._ledger.peek(key, instant))
        return views

    def status_for_location(self, location_id: str, as_of: datetime | None = None) -> list[StatusView]:
        """Every tracked item at *location_id*, ordered by item id."""
        keys = sorted(
            (key for key in self._ledger.keys() if key.location_id == location_id),
            key=lambda key: key.item_id,
        )
        return list(self.status_of_many(keys, as_of).values())

    def recent_reports(
        self,
        limit: int | None = RECENT_REPORTS_LIMIT,
        as_of: datetime | None = None,
    ) -> list[RecentReport]:
        """Newest reports first, each with its own confidence decayed to *as_of*."""
        instant = self._as_of(as_of)
        recent: list[RecentReport] = []
        for report in self._ledger.recent_reports(limit):
            confidence = decay(
                report.base_confidence,
                hours_between(report.submitted_at, instant),
                self._decay_rate,
            )
            # Individual reports count as reliable strictly above the threshold.
            recent.append(RecentReport(report=report, confidence=confidence, reliable=confidence > self._threshold))
        return recent

    def report_stats(self, as_of: datetime | None = None) -> ReportStats:
        """Counters over the recent reports feed."""
        instant = self._as_of(as_of)
        recent = self.recent_reports(limit=None, as_of=instant)
        today = instant.date()
        return ReportStats(
            total_reports=len(recent),
            reports_today=sum(1 for item in recent if item.report.submitted_at.date() == today),
            reliable_available=sum(
                1 for item in recent if item.reliable and item.report.status == AvailabilityStatus.AVAILABLE
            ),
            reliable_unavailable=sum(
                1 for item in recent if item.reliable and item.report.status == AvailabilityStatus.UNAVAILABLE
            ),
            as_of=instant,
        )
