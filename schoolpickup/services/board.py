# schoolpickup/services/board.py - Consumer-side view of active pickups, fed by events and polls
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional

from schoolpickup.models.pickup import ACTIVE_STATUSES, PickupStatus
from schoolpickup.services.event_bus import EventBus, EventPredicate
from schoolpickup.services.outcomes import PickupRequestChangeEvent, PickupRequestSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoardChange:
    kind: str  # added / updated / removed
    student_id: uuid.UUID
    request: PickupRequestSnapshot

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "student_id": str(self.student_id),
            "request_id": str(self.request.id),
            "status": self.request.status.value,
            "version": self.request.version,
        }


class PickupBoard:
    """
    Active requests keyed by student.

    Events and poll snapshots both land here and are applied idempotently:
    replaying an event, or polling state the board already shows, produces
    no changes. Older versions of a request never overwrite newer ones.
    """

    def __init__(self, statuses: Iterable[PickupStatus] = ACTIVE_STATUSES):
        self.statuses = frozenset(statuses)
        self._entries: dict[uuid.UUID, PickupRequestSnapshot] = {}

    def _shows(self, request: Optional[PickupRequestSnapshot]) -> bool:
        return request is not None and request.status in self.statuses

    def apply_request(self, request_id: uuid.UUID, student_id: uuid.UUID,
                      current: Optional[PickupRequestSnapshot]) -> list[BoardChange]:
        """Reconcile one request against its freshly read state (None if gone)."""
        existing = self._entries.get(student_id)

        if not self._shows(current):
            if existing is not None and existing.id == request_id:
                if current is not None and current.version < existing.version:
                    return []
                del self._entries[student_id]
                return [BoardChange("removed", student_id, current or existing)]
            return []

        if existing is None:
            self._entries[student_id] = current
            return [BoardChange("added", student_id, current)]

        if existing.id == current.id:
            if current.version <= existing.version:
                return []
            self._entries[student_id] = current
            return [BoardChange("updated", student_id, current)]

        # A newer request replaced the one on the board
        if current.request_time < existing.request_time:
            return []
        self._entries[student_id] = current
        return [BoardChange("updated", student_id, current)]

    def apply_event(self, event: PickupRequestChangeEvent,
                    current: Optional[PickupRequestSnapshot]) -> list[BoardChange]:
        """Apply an event using the request as re-read after it arrived."""
        return self.apply_request(event.request_id, event.student_id, current)

    def apply_snapshot(self, requests: Iterable[PickupRequestSnapshot]) -> list[BoardChange]:
        """Replace the board with a polled list, reporting only the differences."""
        incoming = {r.student_id: r for r in requests if self._shows(r)}
        changes = []

        for student_id in list(self._entries):
            if student_id not in incoming:
                changes.append(BoardChange("removed", student_id, self._entries.pop(student_id)))

        for student_id, request in incoming.items():
            existing = self._entries.get(student_id)
            if existing is None:
                changes.append(BoardChange("added", student_id, request))
            elif existing != request:
                changes.append(BoardChange("updated", student_id, request))
            self._entries[student_id] = request
        return changes

    def get(self, student_id: uuid.UUID) -> Optional[PickupRequestSnapshot]:
        return self._entries.get(student_id)

    @property
    def active(self) -> list[PickupRequestSnapshot]:
        return sorted(self._entries.values(), key=lambda r: r.request_time)

    def __len__(self):
        return len(self._entries)


@dataclass
class FeedUpdate:
    kind: str  # snapshot / event
    changes: list[BoardChange]
    board: list[PickupRequestSnapshot] = field(default_factory=list)
    event: Optional[PickupRequestChangeEvent] = None


class LiveBoardFeed:
    """Keeps a ``PickupBoard`` current from pushed events, falling back to periodic polls."""

    def __init__(
        self,
        bus: EventBus,
        load_snapshot: Callable[[], list[PickupRequestSnapshot]],
        fetch_request: Callable[[uuid.UUID], Optional[PickupRequestSnapshot]],
        predicate: Optional[EventPredicate] = None,
        poll_interval: float = 15.0,
        board: Optional[PickupBoard] = None,
    ):
        self.bus = bus
        self.load_snapshot = load_snapshot
        self.fetch_request = fetch_request
        self.predicate = predicate
        self.poll_interval = poll_interval
        self.board = board or PickupBoard()

    async def _poll(self, initial: bool = False) -> Optional[FeedUpdate]:
        requests = await asyncio.to_thread(self.load_snapshot)
        changes = self.board.apply_snapshot(requests)
        if changes or initial:
            return FeedUpdate("snapshot", changes, self.board.active)
        return None

    async def updates(self) -> AsyncIterator[FeedUpdate]:
        # Subscribe before the first poll so nothing committed in between is missed
        subscription = self.bus.subscribe(self.predicate)
        try:
            yield await self._poll(initial=True)
            next_poll = time.monotonic() + self.poll_interval

            while True:
                remaining = next_poll - time.monotonic()
                event = await subscription.get(timeout=remaining) if remaining > 0 else None

                if subscription.consume_lag():
                    logger.info(f"Feed {subscription.id} lagged; re-polling")
                    event = None
                    remaining = 0

                if event is not None:
                    current = await asyncio.to_thread(self.fetch_request, event.request_id)
                    changes = self.board.apply_event(event, current)
                    if changes:
                        yield FeedUpdate("event", changes, self.board.active, event)
                    continue

                if remaining <= 0 or time.monotonic() >= next_poll:
                    update = await self._poll()
                    next_poll = time.monotonic() + self.poll_interval
                    if update is not None:
                        yield update
        finally:
            subscription.close()

    def __aiter__(self):
        return self.updates()
