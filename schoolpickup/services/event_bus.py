# schoolpickup/services/event_bus.py - In-process fanout of pickup request changes
"""
Committed transitions are published here and copied to every subscriber whose
predicate matches. Publishing is thread safe and never blocks: writers run in
worker threads, subscribers are consumed on the asyncio loop they were created
on. A subscriber that falls behind is marked as lagged instead of slowing the
writers down; it is expected to re-read state through its poll transport.
"""
import asyncio
import logging
import uuid
from typing import Callable, Iterable, Optional

from schoolpickup.models.pickup import PickupStatus
from schoolpickup.services.outcomes import PickupRequestChangeEvent

logger = logging.getLogger(__name__)

EventPredicate = Callable[[PickupRequestChangeEvent], bool]


def everything() -> EventPredicate:
    return lambda event: True


def for_students(student_ids: Iterable[uuid.UUID]) -> EventPredicate:
    wanted = frozenset(student_ids)
    return lambda event: event.student_id in wanted


def for_class(class_id: uuid.UUID) -> EventPredicate:
    return lambda event: event.class_id == class_id


def for_status(*statuses: PickupStatus) -> EventPredicate:
    wanted = frozenset(statuses)
    return lambda event: event.new_status in wanted


class Subscription:
    """Bounded queue of events for one observer; async-iterable."""

    def __init__(self, bus: "EventBus", predicate: EventPredicate, maxsize: int, loop: asyncio.AbstractEventLoop):
        self.id = uuid.uuid4()
        self._bus = bus
        self.predicate = predicate
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.lagged = False
        self.dropped = 0
        self.closed = False

    def _offer(self, event: PickupRequestChangeEvent):
        # Runs on the subscriber's loop
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.lagged = True
            self.dropped += 1
            logger.warning(f"Subscription {self.id} lagging, dropped event for request {event.request_id}")

    def deliver(self, event: PickupRequestChangeEvent) -> bool:
        """Hand an event to the subscriber's loop. Returns False when the loop is gone."""
        try:
            self._loop.call_soon_threadsafe(self._offer, event)
            return True
        except RuntimeError:
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[PickupRequestChangeEvent]:
        """Next event, or None when ``timeout`` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def consume_lag(self) -> bool:
        """Report and reset the lagged flag."""
        lagged, self.lagged = self.lagged, False
        return lagged

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self):
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> PickupRequestChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()


class EventBus:
    """Fanout of ``PickupRequestChangeEvent`` to in-process subscribers"""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscriptions: dict[uuid.UUID, Subscription] = {}

    def subscribe(self, predicate: Optional[EventPredicate] = None) -> Subscription:
        """Register an observer; must be called from the loop that will consume it."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, predicate or everything(), self.queue_size, loop)
        self._subscriptions[subscription.id] = subscription
        logger.info(f"Subscription {subscription.id} opened ({len(self._subscriptions)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.info(f"Subscription {subscription.id} closed ({len(self._subscriptions)} active)")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: PickupRequestChangeEvent) -> int:
        """Deliver to every matching subscriber. Returns the number of deliveries."""
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            try:
                matches = subscription.predicate(event)
            except Exception:
                logger.exception(f"Subscription {subscription.id} predicate failed; dropping subscriber")
                subscription.close()
                continue
            if not matches:
                continue
            if subscription.deliver(event):
                delivered += 1
            else:
                logger.warning(f"Subscription {subscription.id} loop closed; dropping subscriber")
                subscription.close()

        logger.debug(
            f"Published {event.previous_status.value if event.previous_status else 'new'} -> "
            f"{event.new_status.value} for request {event.request_id} to {delivered} subscriber(s)"
        )
        return delivered
