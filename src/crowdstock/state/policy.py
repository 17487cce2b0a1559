"""Deterministic confidence policy.

Pure functions only: time-based decay, the weighted conflict blend and
the status transition rule built on top of it.  The ledger is the only
caller that persists their results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from crowdstock._constants import DECAY_RATE_PER_HOUR, INCOMING_WEIGHT, PRIOR_WEIGHT, SECONDS_PER_HOUR
from crowdstock.models.report import AvailabilityStatus


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def hours_between(since: datetime, as_of: datetime) -> float:
    """Elapsed hours from *since* to *as_of*, never negative."""
    return max(0.0, (as_of - since).total_seconds() / SECONDS_PER_HOUR)


def decay(confidence: float, age_hours: float, rate: float = DECAY_RATE_PER_HOUR) -> float:
    """Linearly decay *confidence* by *rate* per hour, floored at 0.

    Negative ages are treated as 0 so an out-of-order read can never
    raise confidence.
    """
    return max(0.0, confidence - max(0.0, age_hours) * rate)


def reconcile(
    prior_confidence: float,
    incoming_confidence: float,
    *,
    prior_weight: float = PRIOR_WEIGHT,
    incoming_weight: float = INCOMING_WEIGHT,
) -> float:
    """Blend the prior belief with an incoming report's confidence."""
    return _clamp_unit(prior_confidence * prior_weight + incoming_confidence * incoming_weight)


@dataclass(frozen=True, slots=True)
class Resolution:
    status: AvailabilityStatus
    confidence: float
    flipped: bool = False


def resolve(
    prior_status: AvailabilityStatus | None,
    prior_confidence: float,
    incoming_status: AvailabilityStatus,
    incoming_confidence: float,
    *,
    prior_weight: float = PRIOR_WEIGHT,
    incoming_weight: float = INCOMING_WEIGHT,
) -> Resolution:
    """Merge an incoming (decayed) report into the (decayed) prior belief.

    Policy:
    - No prior: the report is taken as-is, without blending.
    - Agreement: blend towards the report, but never below the prior.
    - Conflict: flip only when the report's weighted support strictly
      exceeds the prior's retained weighted support.  A flipped belief
      takes the blended value; a kept belief is blended against the
      complement of the opposing report and never rises above the prior.
    """
    if prior_status is None:
        return Resolution(status=incoming_status, confidence=_clamp_unit(incoming_confidence))

    if incoming_status == prior_status:
        blended = reconcile(
            prior_confidence,
            incoming_confidence,
            prior_weight=prior_weight,
            incoming_weight=incoming_weight,
        )
        return Resolution(status=prior_status, confidence=max(_clamp_unit(prior_confidence), blended))

    incoming_support = incoming_confidence * incoming_weight
    retained_support = prior_confidence * prior_weight
    if incoming_support > retained_support:
        blended = reconcile(
            prior_confidence,
            incoming_confidence,
            prior_weight=prior_weight,
            incoming_weight=incoming_weight,
        )
        return Resolution(status=incoming_status, confidence=blended, flipped=True)

    eroded = reconcile(
        prior_confidence,
        1.0 - incoming_confidence,
        prior_weight=prior_weight,
        incoming_weight=incoming_weight,
    )
    return Resolution(status=prior_status, confidence=min(_clamp_unit(prior_confidence), eroded))


def is_visible(confidence: float, threshold: float) -> bool:
    return confidence >= threshold
