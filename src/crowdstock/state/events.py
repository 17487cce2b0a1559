"""Change events emitted when an entity's public status changes.

The aggregation engine is the only producer; subscribers and transport
collaborators consume them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from crowdstock.models._base import CrowdStockBaseModel, UtcDatetime
from crowdstock.models.aggregate import Aggregate
from crowdstock.models.report import EntityKey, PublicStatus
from crowdstock.state.policy import is_visible


class ChangeEvent(CrowdStockBaseModel):
    """A change of an entity's publicly visible state."""

    entity_key: EntityKey
    status: PublicStatus
    confidence: float = Field(ge=0.0, le=1.0)
    visible: bool
    occurred_at: UtcDatetime
    sequence: int = Field(default=0, ge=0, description="Per-entity sequence number")
    aggregate: Aggregate

    @classmethod
    def from_aggregate(
        cls,
        aggregate: Aggregate,
        *,
        threshold: float,
        sequence: int = 0,
        occurred_at: datetime | None = None,
    ) -> ChangeEvent:
        visible = is_visible(aggregate.confidence, threshold)
        return cls(
            entity_key=aggregate.entity_key,
            status=PublicStatus.from_status(aggregate.status, visible=visible),
            confidence=aggregate.confidence,
            visible=visible,
            occurred_at=occurred_at or aggregate.last_report_at,
            sequence=sequence,
            aggregate=aggregate,
        )

    def payload(self) -> dict[str, Any]:
        """Transport payload handed to push/live-update collaborators."""
        return self.model_dump(mode="json", include={"entity_key", "status", "confidence", "visible"})
