from __future__ import annotations

import asyncio
import logging
import threading
from datetime import UTC, datetime

import pytest

from crowdstock.config import OverflowPolicy
from crowdstock.models.aggregate import Aggregate
from crowdstock.models.report import AvailabilityStatus, EntityKey
from crowdstock.notifier import SubscriptionNotifier, for_entity, for_location
from crowdstock.state.events import ChangeEvent

_T0 = datetime(2026, 5, 1, tzinfo=UTC)


def _event(key: str = "pharmacy-1:amoxicillin", sequence: int = 1, confidence: float = 0.9) -> ChangeEvent:
    aggregate = Aggregate(
        entity_key=EntityKey.parse(key),
        status=AvailabilityStatus.AVAILABLE,
        confidence=confidence,
        last_report_at=_T0,
        sample_count=sequence,
    )
    return ChangeEvent.from_aggregate(aggregate, threshold=0.3, sequence=sequence)


def test_event_from_aggregate_projects_public_state() -> None:
    visible = _event(confidence=0.9)
    hidden = _event(confidence=0.1)

    assert visible.status == "available"
    assert visible.visible is True
    assert visible.occurred_at == _T0
    assert hidden.status == "unknown"
    assert hidden.payload() == {
        "entity_key": "pharmacy-1:amoxicillin",
        "status": "unknown",
        "confidence": 0.1,
        "visible": False,
    }


def test_publish_fans_out_to_matching_subscribers() -> None:
    notifier = SubscriptionNotifier()
    everything = notifier.subscribe()
    one_key = notifier.subscribe(for_entity("pharmacy-2:insulin"))
    one_location = notifier.subscribe(for_location("pharmacy-1"))

    result = notifier.publish(_event("pharmacy-1:amoxicillin"))

    assert result.delivered == 2
    assert result.ok
    assert everything.pending == 1
    assert one_key.pending == 0
    assert one_location.pending == 1


def test_drop_oldest_keeps_newest_events() -> None:
    notifier = SubscriptionNotifier(buffer_size=2)
    subscription = notifier.subscribe()

    notifier.publish(_event(sequence=1))
    notifier.publish(_event(sequence=2))
    result = notifier.publish(_event(sequence=3))

    assert result.dropped == 1
    assert result.ok
    assert subscription.dropped_count == 1
    assert [event.sequence for event in subscription.drain()] == [2, 3]


def test_reject_policy_refuses_new_events() -> None:
    notifier = SubscriptionNotifier(buffer_size=1, policy=OverflowPolicy.REJECT)
    subscription = notifier.subscribe()

    notifier.publish(_event(sequence=1))
    result = notifier.publish(_event(sequence=2))

    assert result.rejected == 1
    assert not result.ok
    assert subscription.rejected_count == 1
    first = subscription.get_nowait()
    assert first is not None and first.sequence == 1
    assert subscription.get_nowait() is None


def test_slow_subscriber_does_not_affect_others() -> None:
    notifier = SubscriptionNotifier(buffer_size=1, policy=OverflowPolicy.REJECT)
    slow = notifier.subscribe()
    fast = notifier.subscribe(maxsize=10)

    for sequence in range(1, 6):
        notifier.publish(_event(sequence=sequence))

    assert slow.pending == 1
    assert [event.sequence for event in fast.drain()] == [1, 2, 3, 4, 5]


def test_failing_predicate_is_skipped(caplog: pytest.LogCaptureFixture) -> None:
    notifier = SubscriptionNotifier()

    def broken(_event: ChangeEvent) -> bool:
        raise KeyError("boom")

    broken_sub = notifier.subscribe(broken, name="broken")
    healthy = notifier.subscribe()

    with caplog.at_level(logging.WARNING, logger="crowdstock.notifier"):
        result = notifier.publish(_event())

    assert result.delivered == 1
    assert broken_sub.pending == 0
    assert healthy.pending == 1
    assert "Predicate of broken failed" in caplog.text


def test_close_unsubscribes_and_ends_blocking_get() -> None:
    notifier = SubscriptionNotifier()
    subscription = notifier.subscribe()
    notifier.publish(_event(sequence=1))

    subscription.close()

    assert notifier.subscriber_count == 0
    assert subscription.get(timeout=0.1) is not None
    assert subscription.get(timeout=0.1) is None
    assert notifier.publish(_event(sequence=2)).delivered == 0


def test_blocking_get_receives_events_from_other_threads() -> None:
    notifier = SubscriptionNotifier()
    subscription = notifier.subscribe()
    received: list[int] = []

    def consume() -> None:
        while (event := subscription.get(timeout=2.0)) is not None:
            received.append(event.sequence)

    consumer = threading.Thread(target=consume)
    consumer.start()
    for sequence in range(1, 21):
        notifier.publish(_event(sequence=sequence))
    subscription.close()
    consumer.join(timeout=5.0)

    assert received == list(range(1, 21))


@pytest.mark.asyncio
async def test_async_iteration_receives_events_published_from_threads() -> None:
    notifier = SubscriptionNotifier()
    subscription = notifier.subscribe()
    loop = asyncio.get_running_loop()

    def produce() -> None:
        for sequence in range(1, 6):
            notifier.publish(_event(sequence=sequence))
        subscription.close()

    received: list[int] = []

    async def consume() -> None:
        async for event in subscription:
            received.append(event.sequence)

    consumer = asyncio.create_task(consume())
    await loop.run_in_executor(None, produce)
    await asyncio.wait_for(consumer, timeout=5.0)

    assert received == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_context_manager_closes_subscription() -> None:
    notifier = SubscriptionNotifier()

    with notifier.subscribe() as subscription:
        assert notifier.subscriber_count == 1

    assert subscription.closed
    assert notifier.subscriber_count == 0
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()
