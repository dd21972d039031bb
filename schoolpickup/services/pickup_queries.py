# schoolpickup/services/pickup_queries.py - Read side of the pickup board
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from schoolpickup.core.clock import Clock, to_storage, utcnow
from schoolpickup.models.pickup import ACTIVE_STATUSES, PickupHistory, PickupRequest, PickupStatus
from schoolpickup.models.student import Student
from schoolpickup.services.authorization_resolver import ActorContext, AuthorizationResolver, Capability
from schoolpickup.services.mutation_coordinator import MutationCoordinator
from schoolpickup.services.outcomes import ErrorCode, PickupRequestSnapshot, RequestOutcome

logger = logging.getLogger(__name__)


def _snapshot_query():
    return select(PickupRequest, Student.class_id).join(Student, Student.id == PickupRequest.student_id)


def _snapshots(db: Session, query) -> list[PickupRequestSnapshot]:
    return [PickupRequestSnapshot.from_row(row, class_id) for row, class_id in db.execute(query).all()]


class PickupQueries:
    """Lists and lookups used by dashboards, parent views and the sweeper"""

    def __init__(self, coordinator: MutationCoordinator, school_tz: ZoneInfo, clock: Clock = utcnow):
        self.coordinator = coordinator
        self.school_tz = school_tz
        self.clock = clock

    def get(self, request_id: uuid.UUID) -> Optional[PickupRequestSnapshot]:
        def query(db: Session):
            rows = _snapshots(db, _snapshot_query().where(PickupRequest.id == request_id))
            return rows[0] if rows else None
        return self.coordinator.read(query)

    def get_for_actor(self, actor: ActorContext, request_id: uuid.UUID, now: Optional[datetime] = None) -> RequestOutcome:
        """Fetch one request if the actor may see it."""
        now = now or self.clock()

        def query(db: Session):
            rows = _snapshots(db, _snapshot_query().where(PickupRequest.id == request_id))
            if not rows:
                return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Pickup request {request_id} not found")
            snapshot = rows[0]
            if (
                actor.can(Capability.VIEW_ALL_REQUESTS)
                or actor.party_id == snapshot.parent_id
                or (actor.party_id and AuthorizationResolver(db, self.school_tz).resolve(
                    actor.party_id, snapshot.student_id, now).permitted)
            ):
                return RequestOutcome.success(snapshot, changed=False)
            return RequestOutcome.failure(ErrorCode.NOT_AUTHORIZED, f"{actor} may not view this pickup request")

        return self.coordinator.read(query)

    def list_active(self, class_id: Optional[uuid.UUID] = None) -> list[PickupRequestSnapshot]:
        query = _snapshot_query().where(
            PickupRequest.status.in_([s.value for s in ACTIVE_STATUSES])
        ).order_by(PickupRequest.request_time)
        if class_id:
            query = query.where(Student.class_id == class_id)
        return self.coordinator.read(lambda db: _snapshots(db, query))

    def list_called(self, class_id: Optional[uuid.UUID] = None) -> list[PickupRequestSnapshot]:
        query = _snapshot_query().where(
            PickupRequest.status == PickupStatus.CALLED.value
        ).order_by(PickupRequest.called_time)
        if class_id:
            query = query.where(Student.class_id == class_id)
        return self.coordinator.read(lambda db: _snapshots(db, query))

    def permitted_students(self, actor: ActorContext, now: Optional[datetime] = None) -> set[uuid.UUID]:
        now = now or self.clock()
        if actor.party_id is None:
            return set()
        return self.coordinator.read(
            lambda db: AuthorizationResolver(db, self.school_tz).permitted_students(actor.party_id, now)
        )

    def list_for_parent(self, actor: ActorContext, now: Optional[datetime] = None) -> list[PickupRequestSnapshot]:
        """Active requests for students the party may collect today, plus any they opened themselves."""
        now = now or self.clock()
        if actor.party_id is None:
            return []

        def query(db: Session):
            students = AuthorizationResolver(db, self.school_tz).permitted_students(actor.party_id, now)
            scope = PickupRequest.parent_id == actor.party_id
            if students:
                scope = scope | PickupRequest.student_id.in_(students)
            return _snapshots(
                db,
                _snapshot_query()
                .where(PickupRequest.status.in_([s.value for s in ACTIVE_STATUSES]), scope)
                .order_by(PickupRequest.request_time),
            )

        return self.coordinator.read(query)

    def list_visible(self, actor: ActorContext, class_id: Optional[uuid.UUID] = None) -> list[PickupRequestSnapshot]:
        if actor.can(Capability.VIEW_ALL_REQUESTS):
            return self.list_active(class_id)
        requests = self.list_for_parent(actor)
        if class_id:
            requests = [r for r in requests if r.class_id == class_id]
        return requests

    def history(
        self,
        student_id: Optional[uuid.UUID] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        parent_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> list[PickupHistory]:
        """Completed pickups, newest first; ``start``/``end`` are inclusive school-local dates."""
        query = select(PickupHistory).order_by(PickupHistory.completed_time.desc()).limit(limit)
        if student_id:
            query = query.where(PickupHistory.student_id == student_id)
        if parent_id:
            query = query.where(PickupHistory.parent_id == parent_id)
        if start:
            query = query.where(PickupHistory.completed_time >= self._day_boundary(start))
        if end:
            query = query.where(PickupHistory.completed_time < self._day_boundary(end + timedelta(days=1)))
        return self.coordinator.read(lambda db: list(db.execute(query).scalars().all()))

    def _day_boundary(self, day: date) -> datetime:
        return to_storage(datetime.combine(day, time.min, tzinfo=self.school_tz))

    def find_stale_called(self, cutoff: datetime) -> list[uuid.UUID]:
        """Ids of requests still ``called`` whose called_time is before ``cutoff``."""
        query = (
            select(PickupRequest.id)
            .where(
                PickupRequest.status == PickupStatus.CALLED.value,
                PickupRequest.called_time < to_storage(cutoff),
            )
            .order_by(PickupRequest.called_time)
        )
        return self.coordinator.read(lambda db: list(db.execute(query).scalars().all()))
