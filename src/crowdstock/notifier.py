"""Fan-out of change events to subscribers.

Each subscription owns a bounded buffer.  Publishing never blocks: a full
buffer either evicts its oldest event (``DROP_OLDEST``) or refuses the
new one (``REJECT``), and the outcome is reported back to the publisher.
Subscriptions can be consumed from worker threads (:meth:`Subscription.get`)
or from an asyncio loop (``async for``).
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from types import TracebackType

from crowdstock._constants import SUBSCRIBER_BUFFER_SIZE
from crowdstock.config import EngineConfig, OverflowPolicy
from crowdstock.models.report import EntityKey
from crowdstock.state.events import ChangeEvent

_logger = logging.getLogger(__name__)

Predicate = Callable[[ChangeEvent], bool]

_subscription_ids = itertools.count(1)


def for_entity(*entity_keys: EntityKey | str) -> Predicate:
    """Predicate matching events for any of *entity_keys*."""
    wanted = frozenset(EntityKey.parse(key) for key in entity_keys)
    return lambda event: event.entity_key in wanted


def for_location(location_id: str) -> Predicate:
    """Predicate matching events for every item at *location_id*."""
    return lambda event: event.entity_key.location_id == location_id


class _Offer(enum.Enum):
    DELIVERED = "delivered"
    EVICTED = "evicted"
    REJECTED = "rejected"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Outcome of one :meth:`SubscriptionNotifier.publish` call.

    ``dropped`` counts buffered events evicted to make room; ``rejected``
    counts subscribers that refused this event.
    """

    delivered: int = 0
    dropped: int = 0
    rejected: int = 0

    @property
    def ok(self) -> bool:
        return self.rejected == 0


class Subscription:
    """A bounded, per-subscriber queue of change events."""

    def __init__(
        self,
        *,
        predicate: Predicate | None = None,
        maxsize: int = SUBSCRIBER_BUFFER_SIZE,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        name: str | None = None,
        on_close: Callable[[Subscription], None] | None = None,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.id = next(_subscription_ids)
        self.name = name or f"subscription-{self.id}"
        self._predicate = predicate
        self._maxsize = maxsize
        self._policy = policy
        self._on_close = on_close
        self._buffer: deque[ChangeEvent] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None
        self.dropped_count = 0
        self.rejected_count = 0

    def __repr__(self) -> str:
        return f"Subscription(name={self.name!r}, pending={len(self._buffer)}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def matches(self, event: ChangeEvent) -> bool:
        if self._predicate is None:
            return True
        try:
            return bool(self._predicate(event))
        except Exception:
            _logger.warning("Predicate of %s failed for %s", self.name, event.entity_key, exc_info=True)
            return False

    def _offer(self, event: ChangeEvent) -> _Offer:
        with self._cond:
            if self._closed:
                return _Offer.CLOSED
            outcome = _Offer.DELIVERED
            if len(self._buffer) >= self._maxsize:
                if self._policy is OverflowPolicy.REJECT:
                    self.rejected_count += 1
                    return _Offer.REJECTED
                self._buffer.popleft()
                self.dropped_count += 1
                outcome = _Offer.EVICTED
            self._buffer.append(event)
            self._cond.notify_all()
            loop, ready = self._loop, self._ready
        self._wake(loop, ready)
        return outcome

    @staticmethod
    def _wake(loop: asyncio.AbstractEventLoop | None, ready: asyncio.Event | None) -> None:
        if loop is None or ready is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(ready.set)
        except RuntimeError:
            _logger.debug("Subscriber loop closed before wake-up", exc_info=True)

    # ------------------------------------------------------------------
    # Thread consumers
    # ------------------------------------------------------------------

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Block until an event is available.

        Returns ``None`` on timeout, or once the subscription is closed and
        its buffer drained.
        """
        with self._cond:
            self._cond.wait_for(lambda: bool(self._buffer) or self._closed, timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def get_nowait(self) -> ChangeEvent | None:
        with self._cond:
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[ChangeEvent]:
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
        return events

    # ------------------------------------------------------------------
    # asyncio consumers
    # ------------------------------------------------------------------

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        loop = asyncio.get_running_loop()
        with self._cond:
            if self._loop is not loop or self._ready is None:
                self._loop = loop
                self._ready = asyncio.Event()
            ready = self._ready

        while True:
            ready.clear()
            with self._cond:
                if self._buffer:
                    return self._buffer.popleft()
                if self._closed:
                    raise StopAsyncIteration
            await ready.wait()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop accepting events; consumers finish once the buffer is drained."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            loop, ready = self._loop, self._ready
        self._wake(loop, ready)
        if self._on_close is not None:
            self._on_close(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class SubscriptionNotifier:
    """Registry of subscriptions and the publish fan-out."""

    def __init__(
        self,
        *,
        buffer_size: int = SUBSCRIBER_BUFFER_SIZE,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        self._buffer_size = buffer_size
        self._policy = policy
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EngineConfig) -> SubscriptionNotifier:
        return cls(buffer_size=config.subscriber_buffer_size, policy=config.overflow_policy)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        predicate: Predicate | None = None,
        *,
        maxsize: int | None = None,
        policy: OverflowPolicy | None = None,
        name: str | None = None,
    ) -> Subscription:
        """Register a subscriber for events matching *predicate* (all when ``None``)."""
        subscription = Subscription(
            predicate=predicate,
            maxsize=maxsize if maxsize is not None else self._buffer_size,
            policy=policy if policy is not None else self._policy,
            name=name,
            on_close=self.unsubscribe,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        _logger.debug("Added %s (policy=%s)", subscription.name, subscription.policy)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                return
        subscription.close()
        _logger.debug("Removed %s", subscription.name)

    def publish(self, event: ChangeEvent) -> PublishResult:
        """Hand *event* to every matching subscriber without blocking."""
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = dropped = rejected = 0
        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            outcome = subscription._offer(event)
            if outcome is _Offer.DELIVERED:
                delivered += 1
            elif outcome is _Offer.EVICTED:
                delivered += 1
                dropped += 1
            elif outcome is _Offer.REJECTED:
                rejected += 1
                _logger.debug("%s buffer full, rejected event for %s", subscription.name, event.entity_key)

        return PublishResult(delivered=delivered, dropped=dropped, rejected=rejected)

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()
