from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from crowdstock.models.report import AvailabilityStatus
from crowdstock.state.policy import decay, hours_between, is_visible, reconcile, resolve

AVAILABLE = AvailabilityStatus.AVAILABLE
UNAVAILABLE = AvailabilityStatus.UNAVAILABLE


@pytest.mark.parametrize("confidence", [0.0, 0.3, 0.75, 1.0])
@pytest.mark.parametrize("age", [0.0, 1.0, 24.0, 500.0])
def test_decay_never_exceeds_input(confidence: float, age: float) -> None:
    assert decay(confidence, age) <= confidence


@pytest.mark.parametrize("confidence", [0.0, 0.42, 1.0])
def test_decay_at_zero_age_is_identity(confidence: float) -> None:
    assert decay(confidence, 0) == confidence


def test_decay_is_monotonic_and_floored() -> None:
    ages = [0, 1, 6, 24, 48, 100, 160, 1000]
    values = [decay(1.0, age) for age in ages]
    assert values == sorted(values, reverse=True)
    assert decay(1.0, 10_000) == 0
    assert min(values) >= 0


def test_decay_loses_fifteen_percent_per_day() -> None:
    assert decay(1.0, 24) == pytest.approx(0.85)


def test_decay_treats_negative_age_as_zero() -> None:
    assert decay(0.8, -5) == 0.8


def test_decay_rate_is_configurable() -> None:
    assert decay(1.0, 10, rate=0.05) == pytest.approx(0.5)


def test_hours_between_clamps_negative_spans() -> None:
    t0 = datetime(2026, 1, 1, tzinfo=UTC)
    assert hours_between(t0, t0 + timedelta(hours=3)) == pytest.approx(3.0)
    assert hours_between(t0 + timedelta(hours=3), t0) == 0.0


def test_reconcile_weights_prior_over_incoming() -> None:
    assert reconcile(0.85, 1.0) == pytest.approx(0.91)
    assert reconcile(0.0, 1.0) == pytest.approx(0.4)
    assert reconcile(1.0, 0.0, prior_weight=0.5, incoming_weight=0.5) == pytest.approx(0.5)


def test_resolve_first_report_bypasses_blend() -> None:
    resolution = resolve(None, 0.0, UNAVAILABLE, 0.7)

    assert resolution.status == UNAVAILABLE
    assert resolution.confidence == 0.7
    assert resolution.flipped is False


def test_resolve_agreement_climbs_towards_one() -> None:
    resolution = resolve(AVAILABLE, 0.85, AVAILABLE, 1.0)

    assert resolution.status == AVAILABLE
    assert resolution.confidence == pytest.approx(0.91)


def test_resolve_agreement_never_lowers_belief() -> None:
    resolution = resolve(AVAILABLE, 0.9, AVAILABLE, 0.2)

    assert resolution.confidence == pytest.approx(0.9)


def test_resolve_conflict_against_strong_prior_keeps_status() -> None:
    resolution = resolve(AVAILABLE, 0.85, UNAVAILABLE, 1.0)

    assert resolution.status == AVAILABLE
    assert resolution.flipped is False
    # Retained prior share only; the opposing report contributes nothing.
    assert resolution.confidence == pytest.approx(0.51)


def test_resolve_conflict_against_weak_prior_flips() -> None:
    resolution = resolve(AVAILABLE, 0.375, UNAVAILABLE, 1.0)

    assert resolution.status == UNAVAILABLE
    assert resolution.flipped is True
    assert resolution.confidence == pytest.approx(0.375 * 0.6 + 0.4)


def test_resolve_conflict_tie_does_not_flip() -> None:
    # 0.4 * 0.6 == 0.6 * 0.4: support must strictly exceed the retained share.
    resolution = resolve(AVAILABLE, 0.4, UNAVAILABLE, 0.6)

    assert resolution.status == AVAILABLE
    assert resolution.flipped is False


def test_is_visible_is_inclusive() -> None:
    assert is_visible(0.3, 0.3) is True
    assert is_visible(0.29, 0.3) is False


@pytest.mark.parametrize(("prior", "incoming"), [(0.25, 0.0), (0.25, 0.1), (0.5, 0.3), (0.0, 0.0)])
def test_resolve_weak_conflict_never_raises_kept_belief(prior: float, incoming: float) -> None:
    resolution = resolve(AVAILABLE, prior, UNAVAILABLE, incoming)

    assert resolution.status == AVAILABLE
    assert resolution.flipped is False
    assert resolution.confidence <= prior
