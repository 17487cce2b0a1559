"""Concurrency-safe entity ledger.

This is the only component allowed to mutate aggregates.  Writers for
one entity key are serialized by a per-key lock; readers never take it.
Stored aggregates are immutable and replaced with a single reference
swap, so a reader sees either the old or the new belief, never a mix.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from crowdstock._constants import (
    DECAY_RATE_PER_HOUR,
    INCOMING_WEIGHT,
    PRIOR_WEIGHT,
    RECENT_REPORTS_LIMIT,
)
from crowdstock._redact import redact_report
from crowdstock.config import EngineConfig
from crowdstock.exceptions import DuplicateSubmission, HistoryLogError, UnknownEntity
from crowdstock.history import ReportLog
from crowdstock.models._base import utcnow
from crowdstock.models.aggregate import Aggregate
from crowdstock.models.report import EntityKey, Report
from crowdstock.state.policy import decay, hours_between, resolve

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LedgerUpdate:
    """Result of folding one report into the ledger.

    ``previous`` is the prior aggregate projected to the time the report
    was folded in (``None`` for a first report).
    """

    report: Report
    previous: Aggregate | None
    current: Aggregate
    sequence: int
    flipped: bool = False


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    aggregate: Aggregate | None = None
    history: list[Report] = field(default_factory=list)
    report_ids: set[str] = field(default_factory=set)
    last_by_token: dict[str, datetime] = field(default_factory=dict)
    sequence: int = 0


class EntityLedger:
    """Per-entity aggregates plus their append-only report history.

    Given the same sequence of reports, the ledger always produces the same
    aggregates, which is what makes history replay deterministic.
    """

    def __init__(
        self,
        *,
        decay_rate_per_hour: float = DECAY_RATE_PER_HOUR,
        prior_weight: float = PRIOR_WEIGHT,
        incoming_weight: float = INCOMING_WEIGHT,
        recent_reports_limit: int = RECENT_REPORTS_LIMIT,
        history_log: ReportLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._decay_rate = decay_rate_per_hour
        self._prior_weight = prior_weight
        self._incoming_weight = incoming_weight
        self._history_log = history_log
        self._clock = clock
        self._entries: dict[EntityKey, _Entry] = {}
        self._entries_lock = threading.Lock()
        self._recent: deque[Report] = deque(maxlen=recent_reports_limit)
        self._recent_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        history_log: ReportLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> EntityLedger:
        return cls(
            decay_rate_per_hour=config.decay_rate_per_hour,
            prior_weight=config.prior_weight,
            incoming_weight=config.incoming_weight,
            recent_reports_limit=config.recent_reports_limit,
            history_log=history_log,
            clock=clock,
        )

    @property
    def history_log(self) -> ReportLog | None:
        return self._history_log

    def _entry(self, key: EntityKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            return entry

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, report: Report) -> Aggregate:
        """Fold *report* into its entity's aggregate and return the result."""
        return self.apply(report).current

    def apply(
        self,
        report: Report,
        *,
        cooldown_seconds: float = 0.0,
        on_commit: Callable[[LedgerUpdate], None] | None = None,
        write_through: bool = True,
    ) -> LedgerUpdate:
        """Fold *report* into the ledger atomically.

        Duplicate detection, history write-through, the aggregate swap and
        ``on_commit`` all happen under the entity's lock, in that order.  If
        anything before the swap raises, the ledger is left untouched.
        """
        entry = self._entry(report.entity_key)
        with entry.lock:
            self._check_duplicate(entry, report, cooldown_seconds)

            update = self._fold(entry, report)

            if write_through and self._history_log is not None:
                try:
                    self._history_log.append(report)
                except HistoryLogError:
                    raise
                except OSError as exc:
                    raise HistoryLogError(f"Failed to write report {report.report_id}: {exc}") from exc

            entry.aggregate = update.current
            entry.history.append(report)
            entry.report_ids.add(report.report_id)
            entry.sequence = update.sequence
            if report.submitter_token:
                entry.last_by_token[report.submitter_token] = report.submitted_at
            with self._recent_lock:
                self._recent.appendleft(report)

            _logger.debug(
                "Folded report=%s: status=%s confidence=%.4f samples=%d flipped=%s",
                redact_report(report.model_dump(mode="json")),
                update.current.status,
                update.current.confidence,
                update.current.sample_count,
                update.flipped,
            )

            if on_commit is not None:
                on_commit(update)
            return update

    def _check_duplicate(self, entry: _Entry, report: Report, cooldown_seconds: float) -> None:
        if report.report_id in entry.report_ids:
            raise DuplicateSubmission(
                f"Report {report.report_id} was already recorded for {report.entity_key}",
                entity_key=str(report.entity_key),
                submitter_token=report.submitter_token,
            )
        if cooldown_seconds <= 0:
            return
        self._prune_tokens(entry, report.submitted_at, cooldown_seconds)
        if not report.submitter_token:
            return
        last = entry.last_by_token.get(report.submitter_token)
        if last is None:
            return
        delta = abs((report.submitted_at - last).total_seconds())
        if delta < cooldown_seconds:
            raise DuplicateSubmission(
                f"Submitter already reported on {report.entity_key} {delta:.0f}s ago",
                entity_key=str(report.entity_key),
                submitter_token=report.submitter_token,
                retry_after=cooldown_seconds - delta,
            )

    @staticmethod
    def _prune_tokens(entry: _Entry, submitted_at: datetime, cooldown_seconds: float) -> None:
        """Forget submitters whose last report is a full cooldown behind the newest one."""
        newest = submitted_at
        if entry.aggregate is not None:
            newest = max(newest, entry.aggregate.last_report_at)
        cutoff = newest - timedelta(seconds=cooldown_seconds)
        stale = [token for token, last in entry.last_by_token.items() if last <= cutoff]
        for token in stale:
            del entry.last_by_token[token]

    def _fold(self, entry: _Entry, report: Report) -> LedgerUpdate:
        previous = entry.aggregate
        if previous is None:
            effective_at = report.submitted_at
        else:
            # The decay clock never moves backwards; late reports are decayed instead.
            effective_at = max(previous.last_report_at, report.submitted_at)

        incoming = decay(
            report.base_confidence,
            hours_between(report.submitted_at, effective_at),
            self._decay_rate,
        )

        projected: Aggregate | None = None
        if previous is not None:
            projected = self._project(previous, effective_at)

        resolution = resolve(
            projected.status if projected is not None else None,
            projected.confidence if projected is not None else 0.0,
            report.status,
            incoming,
            prior_weight=self._prior_weight,
            incoming_weight=self._incoming_weight,
        )
        current = Aggregate(
            entity_key=report.entity_key,
            status=resolution.status,
            confidence=resolution.confidence,
            last_report_at=effective_at,
            sample_count=(previous.sample_count if previous is not None else 0) + 1,
        )
        return LedgerUpdate(
            report=report,
            previous=projected,
            current=current,
            sequence=entry.sequence + 1,
            flipped=resolution.flipped,
        )

    def replay(self, reports: Iterable[Report]) -> int:
        """Fold a report history in order without writing it back.

        Returns the number of reports folded in.
        """
        count = 0
        for report in reports:
            self.apply(report, write_through=False)
            count += 1
        return count

    def clear(self) -> None:
        with self._entries_lock:
            self._entries = {}
        with self._recent_lock:
            self._recent.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _project(self, aggregate: Aggregate, as_of: datetime) -> Aggregate:
        confidence = decay(
            aggregate.confidence,
            hours_between(aggregate.last_report_at, as_of),
            self._decay_rate,
        )
        return aggregate.model_copy(update={"confidence": confidence})

    def peek(self, entity_key: EntityKey, as_of: datetime | None = None) -> Aggregate | None:
        """Return the aggregate re-decayed to *as_of*, without mutating state."""
        entry = self._entries.get(entity_key)
        if entry is None:
            return None
        aggregate = entry.aggregate
        if aggregate is None:
            return None
        return self._project(aggregate, as_of if as_of is not None else self._clock())

    def require(self, entity_key: EntityKey, as_of: datetime | None = None) -> Aggregate:
        """Like :meth:`peek` but raise :class:`UnknownEntity` when absent."""
        aggregate = self.peek(entity_key, as_of)
        if aggregate is None:
            raise UnknownEntity(f"No reports recorded for {entity_key}", entity_key=str(entity_key))
        return aggregate

    def history(self, entity_key: EntityKey) -> list[Report]:
        entry = self._entries.get(entity_key)
        if entry is None:
            return []
        with entry.lock:
            return list(entry.history)

    def keys(self) -> list[EntityKey]:
        with self._entries_lock:
            items = list(self._entries.items())
        return [key for key, entry in items if entry.aggregate is not None]

    def recent_reports(self, limit: int | None = None) -> list[Report]:
        """Most recently recorded reports across all entities, newest first."""
        with self._recent_lock:
            reports = list(self._recent)
        if limit is not None:
            return reports[: max(0, limit)]
        return reports

    def now(self) -> datetime:
        return self._clock()

    def __contains__(self, entity_key: object) -> bool:
        entry = self._entries.get(entity_key)  # type: ignore[call-overload]
        return entry is not None and entry.aggregate is not None

    def __len__(self) -> int:
        return len(self.keys())
