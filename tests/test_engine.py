from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from crowdstock.config import EngineConfig, OverflowPolicy
from crowdstock.engine import AggregationEngine
from crowdstock.exceptions import DuplicateSubmission, InvalidReport
from crowdstock.history import MemoryReportLog
from crowdstock.models.report import AvailabilityStatus, EntityKey, PublicStatus, Report
from crowdstock.notifier import SubscriptionNotifier

KEY = "pharmacy-1:amoxicillin"


def _dt(hours: float = 0.0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(hours=hours)


def _payload(status: str = "available", *, hours: float = 0.0, token: str = "", **extra: Any) -> dict[str, Any]:
    return {
        "entity_key": KEY,
        "status": status,
        "base_confidence": 1.0,
        "submitted_at": _dt(hours),
        "submitter_token": token,
        **extra,
    }


def _engine(**overrides: Any) -> AggregationEngine:
    config = EngineConfig(**{"duplicate_cooldown_seconds": 0, **overrides})
    return AggregationEngine(config, clock=_dt)


def test_first_report_is_taken_exactly() -> None:
    engine = _engine()

    aggregate, changed = engine.submit(_payload(base_confidence=0.73))

    assert aggregate.status == AvailabilityStatus.AVAILABLE
    assert aggregate.confidence == 0.73
    assert changed is True


def test_reference_scenario_with_conflicting_reports() -> None:
    engine = _engine()

    engine.submit(_payload())
    view = engine.query.status_of(KEY, _dt())
    assert (view.status, view.confidence, view.visible) == (PublicStatus.AVAILABLE, 1.0, True)

    view = engine.query.status_of(KEY, _dt(24))
    assert view.status == PublicStatus.AVAILABLE
    assert view.confidence == pytest.approx(0.85)
    assert view.visible is True

    # B conflicts: support 0.4 does not beat the retained 0.51, status holds.
    aggregate, changed = engine.submit(_payload("unavailable", hours=24))
    assert aggregate.status == AvailabilityStatus.AVAILABLE
    assert aggregate.confidence == pytest.approx(0.51)
    assert changed is False

    # A second conflicting report now outweighs the eroded prior.
    aggregate, changed = engine.submit(_payload("unavailable", hours=24))
    assert aggregate.status == AvailabilityStatus.UNAVAILABLE
    assert aggregate.confidence == pytest.approx(0.51 * 0.6 + 0.4)
    assert changed is True


def test_agreeing_reports_do_not_decrease_confidence() -> None:
    engine = _engine()
    engine.submit(_payload())
    decayed_only = engine.query.status_of(KEY, _dt(12)).confidence

    aggregate, _ = engine.submit(_payload(hours=12))

    assert aggregate.confidence >= decayed_only


def test_immediate_conflict_does_not_flip_but_stale_prior_does() -> None:
    engine = _engine()
    engine.submit(_payload())

    aggregate, _ = engine.submit(_payload("unavailable"))
    assert aggregate.status == AvailabilityStatus.AVAILABLE

    other = "pharmacy-2:insulin"
    engine.submit(_payload(entity_key=other))
    aggregate, changed = engine.submit(_payload("unavailable", hours=100, entity_key=other))
    assert aggregate.status == AvailabilityStatus.UNAVAILABLE
    assert changed is True


def test_invalid_reports_never_reach_ledger() -> None:
    engine = _engine()

    with pytest.raises(InvalidReport) as excinfo:
        engine.submit(_payload("sold_out"))
    assert excinfo.value.field == "status"

    with pytest.raises(InvalidReport) as excinfo:
        engine.submit(_payload(base_confidence=1.5))
    assert excinfo.value.field == "base_confidence"

    constructed = Report.model_construct(
        entity_key=EntityKey(location_id="pharmacy-1", item_id="amoxicillin"),
        status=AvailabilityStatus.AVAILABLE,
        base_confidence=-0.1,
        submitted_at=_dt(),
        submitter_token="",
        report_id="r1",
    )
    with pytest.raises(InvalidReport):
        engine.submit(constructed)

    assert len(engine.ledger) == 0


def test_duplicate_submission_within_cooldown_is_rejected() -> None:
    engine = _engine(duplicate_cooldown_seconds=900)
    engine.submit(_payload(token="device-a"))

    with pytest.raises(DuplicateSubmission):
        engine.submit(_payload("unavailable", hours=0.05, token="device-a"))

    aggregate, _ = engine.submit(_payload("unavailable", hours=0.05, token="device-b"))
    assert aggregate.sample_count == 2


def test_zero_cooldown_matches_observed_behavior() -> None:
    engine = _engine(duplicate_cooldown_seconds=0)
    engine.submit(_payload(token="device-a"))

    aggregate, _ = engine.submit(_payload(token="device-a"))

    assert aggregate.sample_count == 2


def test_change_detection_tracks_visibility_crossings() -> None:
    engine = _engine()

    _, changed = engine.submit(_payload(base_confidence=0.2))
    assert changed is False

    aggregate, changed = engine.submit(_payload())
    assert aggregate.confidence == pytest.approx(0.52)
    assert changed is True

    _, changed = engine.submit(_payload())
    assert changed is False


def test_revived_entity_counts_as_changed() -> None:
    engine = _engine()
    engine.submit(_payload())
    assert engine.query.status_of(KEY, _dt(120)).visible is False

    aggregate, changed = engine.submit(_payload(hours=120))

    assert aggregate.confidence == pytest.approx(0.25 * 0.6 + 0.4)
    assert changed is True


def test_changes_are_published_in_submission_order() -> None:
    engine = _engine()
    subscription = engine.subscribe()

    engine.submit(_payload())
    engine.submit(_payload("unavailable"))
    engine.submit(_payload("unavailable"))
    engine.submit(_payload("unavailable"))

    events = subscription.drain()
    assert [event.status for event in events] == [PublicStatus.AVAILABLE, PublicStatus.UNAVAILABLE]
    assert [event.sequence for event in events] == sorted(event.sequence for event in events)
    assert events[1].payload() == {
        "entity_key": KEY,
        "status": "unavailable",
        "confidence": pytest.approx(events[1].confidence),
        "visible": True,
    }


def test_rejected_notification_does_not_roll_back_submit(caplog: pytest.LogCaptureFixture) -> None:
    engine = _engine()
    engine.subscribe(maxsize=1, policy=OverflowPolicy.REJECT)
    engine.submit(_payload())

    with caplog.at_level(logging.WARNING, logger="crowdstock.engine"):
        aggregate, changed = engine.submit(_payload("unavailable", hours=100))

    assert changed is True
    assert aggregate.status == AvailabilityStatus.UNAVAILABLE
    assert engine.query.status_of(KEY, _dt(100)).status == PublicStatus.UNAVAILABLE
    assert "rejected by 1 subscriber" in caplog.text


class _ExplodingNotifier(SubscriptionNotifier):
    def publish(self, event):  # type: ignore[no-untyped-def]
        raise RuntimeError("transport down")


def test_publish_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    engine = AggregationEngine(EngineConfig(duplicate_cooldown_seconds=0), notifier=_ExplodingNotifier(), clock=_dt)

    with caplog.at_level(logging.WARNING, logger="crowdstock.engine"):
        aggregate, changed = engine.submit(_payload())

    assert changed is True
    assert aggregate.sample_count == 1
    assert "Publishing change" in caplog.text


def test_replay_reproduces_streaming_state() -> None:
    log = MemoryReportLog()
    live = AggregationEngine(EngineConfig(duplicate_cooldown_seconds=900), history_log=log, clock=_dt)
    other = "pharmacy-2:insulin"
    live.submit(_payload(token="a"))
    live.submit(_payload("unavailable", hours=30, token="b"))
    live.submit(_payload("unavailable", hours=31, token="c"))
    live.submit(_payload(hours=5, token="d"))
    live.submit(_payload(entity_key=other, hours=2, token="a"))
    live.submit(_payload("unavailable", entity_key=other, hours=80, token="a"))
    with pytest.raises(DuplicateSubmission):
        live.submit(_payload(hours=31.1, token="c"))

    rebuilt = AggregationEngine(EngineConfig(duplicate_cooldown_seconds=900), clock=_dt)
    assert rebuilt.rebuild(log) == 6

    for key in (KEY, other):
        expected = live.ledger.peek(EntityKey.parse(key), _dt(100))
        actual = rebuilt.ledger.peek(EntityKey.parse(key), _dt(100))
        assert expected is not None and actual is not None
        assert actual.status == expected.status
        assert actual.confidence == pytest.approx(expected.confidence)
        assert actual.last_report_at == expected.last_report_at
        assert actual.sample_count == expected.sample_count


def test_replay_does_not_notify() -> None:
    log = MemoryReportLog()
    for report in (Report.model_validate(_payload()), Report.model_validate(_payload("unavailable", hours=100))):
        log.append(report)

    engine = _engine()
    subscription = engine.subscribe()
    engine.replay(log)

    assert subscription.drain() == []
    assert engine.query.status_of(KEY, _dt(100)).status == PublicStatus.UNAVAILABLE


def test_restore_reads_configured_history(tmp_path) -> None:
    path = tmp_path / "reports.jsonl"
    first = AggregationEngine(EngineConfig(duplicate_cooldown_seconds=0, history_path=str(path)), clock=_dt)
    first.submit(_payload())
    first.submit(_payload(hours=3))

    second = AggregationEngine(EngineConfig(duplicate_cooldown_seconds=0, history_path=str(path)), clock=_dt)

    assert second.restore() == 2
    view = second.query.status_of(KEY, _dt(3))
    assert view.sample_count == 2
    assert view.confidence == pytest.approx(first.query.status_of(KEY, _dt(3)).confidence)


def test_weak_conflicting_report_does_not_revive_hidden_belief() -> None:
    engine = _engine()
    engine.submit(_payload(base_confidence=0.25))

    aggregate, changed = engine.submit(_payload("unavailable", base_confidence=0.0))

    assert aggregate.status == AvailabilityStatus.AVAILABLE
    assert aggregate.confidence <= 0.25
    assert changed is False
    view = engine.query.status_of(KEY, _dt())
    assert view.status == PublicStatus.UNKNOWN
    assert view.visible is False
