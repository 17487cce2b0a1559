"""Aggregation engine: the write path for crowd reports."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from crowdstock.config import EngineConfig
from crowdstock.history import JsonlReportLog, ReportLog
from crowdstock.ingestion.normalize import build_report
from crowdstock.models._base import utcnow
from crowdstock.models.aggregate import Aggregate
from crowdstock.models.report import PublicStatus, Report
from crowdstock.notifier import Predicate, Subscription, SubscriptionNotifier
from crowdstock.query import QueryService
from crowdstock.state.events import ChangeEvent
from crowdstock.state.ledger import EntityLedger, LedgerUpdate
from crowdstock.state.policy import is_visible

_logger = logging.getLogger(__name__)

_PublicState = tuple[PublicStatus, bool]


class AggregationEngine:
    """Validate, de-duplicate, fold and publish crowd reports.

    Usage::

        engine = AggregationEngine(EngineConfig.from_env())
        engine.restore()
        aggregate, changed = engine.submit(
            {"entity_key": "pharmacy-1:amoxicillin", "status": "available", "submitter_token": "abc"}
        )
        view = engine.query.status_of("pharmacy-1:amoxicillin")
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        ledger: EntityLedger | None = None,
        notifier: SubscriptionNotifier | None = None,
        history_log: ReportLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or EngineConfig()
        if history_log is None and self._config.history_path:
            history_log = JsonlReportLog(self._config.history_path)
        self._clock = clock
        self._ledger = ledger or EntityLedger.from_config(self._config, history_log=history_log, clock=clock)
        self._notifier = notifier or SubscriptionNotifier.from_config(self._config)
        self._query = QueryService.from_config(self._ledger, self._config)

    @classmethod
    def from_env(cls, **overrides: Any) -> AggregationEngine:
        return cls(EngineConfig.from_env(**overrides))

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def ledger(self) -> EntityLedger:
        return self._ledger

    @property
    def notifier(self) -> SubscriptionNotifier:
        return self._notifier

    @property
    def query(self) -> QueryService:
        return self._query

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _public_state(self, aggregate: Aggregate | None) -> _PublicState:
        if aggregate is None:
            return PublicStatus.UNKNOWN, False
        visible = is_visible(aggregate.confidence, self._config.visibility_threshold)
        return PublicStatus.from_status(aggregate.status, visible=visible), visible

    def submit(self, report: Report | Mapping[str, Any]) -> tuple[Aggregate, bool]:
        """Fold one report into its entity's aggregate.

        Returns the updated aggregate and whether the entity's public state
        (status shown to consumers, visibility) changed.

        Raises
        ------
        InvalidReport
            Malformed status, confidence, key or timestamp.
        DuplicateSubmission
            The submitter already reported on this entity within the cooldown.
        HistoryLogError
            The report could not be written through; nothing was applied.
        """
        validated = build_report(report, now=self._clock())
        changed_flags: list[bool] = []

        def _on_commit(update: LedgerUpdate) -> None:
            changed = self._public_state(update.previous) != self._public_state(update.current)
            changed_flags.append(changed)
            if changed:
                self._publish(update)

        update = self._ledger.apply(
            validated,
            cooldown_seconds=self._config.duplicate_cooldown_seconds,
            on_commit=_on_commit,
        )
        return update.current, changed_flags[0]

    def _publish(self, update: LedgerUpdate) -> None:
        event = ChangeEvent.from_aggregate(
            update.current,
            threshold=self._config.visibility_threshold,
            sequence=update.sequence,
            occurred_at=update.report.submitted_at,
        )
        # Notification is best-effort; the ledger has already committed.
        try:
            result = self._notifier.publish(event)
        except Exception:
            _logger.warning("Publishing change for %s failed", event.entity_key, exc_info=True)
            return
        if not result.ok:
            _logger.warning(
                "Change for %s rejected by %d subscriber(s) with full buffers",
                event.entity_key,
                result.rejected,
            )
        elif result.dropped:
            _logger.debug("Change for %s evicted %d stale buffered event(s)", event.entity_key, result.dropped)

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, reports: Iterable[Report]) -> int:
        """Fold a report history into the current state without notifying."""
        count = self._ledger.replay(reports)
        _logger.debug("Replayed %d report(s)", count)
        return count

    def rebuild(self, reports: Iterable[Report]) -> int:
        """Discard all state and rebuild it from *reports* in order."""
        self._ledger.clear()
        return self.replay(reports)

    def restore(self) -> int:
        """Rebuild state from the configured history log, if any."""
        history_log = self._ledger.history_log
        if history_log is None:
            return 0
        count = self.rebuild(history_log)
        _logger.info("Restored %d report(s) into %d entities", count, len(self._ledger))
        return count

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, predicate: Predicate | None = None, **kwargs: Any) -> Subscription:
        return self._notifier.subscribe(predicate, **kwargs)

    def close(self) -> None:
        self._notifier.close()
