# schoolpickup/services/pickup_state_machine.py - Lifecycle of a single pickup request
"""
pending --call--> called --complete--> completed
pending --cancel--> cancelled
called  --cancel--> cancelled

Every write goes through ``MutationCoordinator`` so that the decision, the
conditional UPDATE, the commit and the change event happen under one lock
per student. Failures are returned as ``RequestOutcome`` values.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from schoolpickup.core.clock import Clock, to_storage, utcnow
from schoolpickup.models.parent import Parent
from schoolpickup.models.pickup import ACTIVE_STATUSES, PickupHistory, PickupRequest, PickupStatus
from schoolpickup.models.student import Student
from schoolpickup.services.authorization_resolver import ActorContext, AuthorizationResolver, Capability
from schoolpickup.services.mutation_coordinator import (
    CasResult,
    ConcurrentInsertError,
    MutationCoordinator,
    TransientStoreError,
)
from schoolpickup.services.outcomes import (
    ErrorCode,
    PickupRequestChangeEvent,
    PickupRequestSnapshot,
    RequestOutcome,
)

logger = logging.getLogger(__name__)

VALID_EDGES: dict[PickupStatus, frozenset[PickupStatus]] = {
    PickupStatus.PENDING: frozenset({PickupStatus.CALLED, PickupStatus.CANCELLED}),
    PickupStatus.CALLED: frozenset({PickupStatus.COMPLETED, PickupStatus.CANCELLED}),
    PickupStatus.COMPLETED: frozenset(),
    PickupStatus.CANCELLED: frozenset(),
}

REQUIRED_CAPABILITY = {
    PickupStatus.CALLED: Capability.CALL_STUDENTS,
    PickupStatus.COMPLETED: Capability.COMPLETE_PICKUPS,
}

StatusLike = Union[PickupStatus, str]


def pickup_duration_minutes(request_time: datetime, completed_time: datetime) -> int:
    return max(0, round((completed_time - request_time).total_seconds() / 60))


class PickupService:
    """Creates pickup requests and moves them through their lifecycle"""

    def __init__(
        self,
        coordinator: MutationCoordinator,
        school_tz: ZoneInfo,
        clock: Clock = utcnow,
        max_retries: int = 2,
    ):
        self.coordinator = coordinator
        self.school_tz = school_tz
        self.clock = clock
        self.max_retries = max_retries

    def resolver(self, db: Session) -> AuthorizationResolver:
        return AuthorizationResolver(db, self.school_tz)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create(self, actor: ActorContext, student_id: uuid.UUID, now: Optional[datetime] = None) -> RequestOutcome:
        """Open a pending request for ``student_id`` on behalf of ``actor``."""
        now = now or self.clock()

        if actor.party_id is None or not actor.can(Capability.REQUEST_PICKUP):
            return RequestOutcome.failure(ErrorCode.NOT_AUTHORIZED, f"{actor} cannot request pickups")

        def operation(db: Session):
            return self._create(db, actor, student_id, now)

        try:
            outcome = self.coordinator.run(student_id, operation)
        except ConcurrentInsertError:
            # Lost the race on the one-active-request index
            return RequestOutcome.failure(
                ErrorCode.ALREADY_ACTIVE, "Another pickup request for this student was just created"
            )
        except TransientStoreError as e:
            return RequestOutcome.failure(ErrorCode.TRANSIENT_IO, f"Pickup store unavailable: {e}")

        if outcome.ok:
            logger.info(f"Pickup request {outcome.request.id} created for student {student_id} by {actor}")
        else:
            logger.info(f"Pickup request for student {student_id} by {actor} refused: {outcome.error.value} {outcome.message}")
        return outcome

    def _create(self, db: Session, actor: ActorContext, student_id: uuid.UUID, now: datetime):
        student = db.get(Student, student_id)
        if student is None or student.deleted_at is not None:
            return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Student {student_id} not found"), None

        parent = db.get(Parent, actor.party_id)
        if parent is None or not parent.is_active:
            return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Requesting party {actor.party_id} not found"), None

        resolution = self.resolver(db).resolve(actor.party_id, student_id, now)
        if not resolution.permitted:
            return RequestOutcome.failure(
                ErrorCode.NOT_AUTHORIZED,
                f"{actor} may not pick up {student.full_name}: {resolution.message}",
                reason=resolution.reason,
            ), None

        existing = db.execute(
            select(PickupRequest).where(
                PickupRequest.student_id == student_id,
                PickupRequest.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
        ).scalars().first()
        if existing is not None:
            return RequestOutcome.failure(
                ErrorCode.ALREADY_ACTIVE,
                f"{student.full_name} already has a {existing.status} pickup request",
                request=PickupRequestSnapshot.from_row(existing, student.class_id),
            ), None

        row = PickupRequest(
            student_id=student_id,
            parent_id=actor.party_id,
            request_time=to_storage(now),
            status=PickupStatus.PENDING.value,
            version=1,
        )
        db.add(row)
        db.flush()

        snapshot = PickupRequestSnapshot.from_row(row, student.class_id)
        event = PickupRequestChangeEvent.for_change(snapshot, None, now)
        return RequestOutcome.success(snapshot, message=f"Pickup requested for {student.full_name}"), event

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        actor: ActorContext,
        request_id: uuid.UUID,
        target: StatusLike,
        expected_status: Optional[StatusLike] = None,
        now: Optional[datetime] = None,
    ) -> RequestOutcome:
        """
        Move a request to ``target``.

        ``expected_status`` is the status the caller last saw; if the stored
        status has moved on the result is CONFLICT. Asking for the status the
        request is already in (while still active) succeeds with
        ``changed=False`` and publishes nothing.
        That also holds when another process wins the conditional UPDATE to
        the same status: without ``expected_status`` the loser re-reads and
        reports the no-op instead of CONFLICT.
        """
        try:
            target = PickupStatus(target)
            expected = PickupStatus(expected_status) if expected_status is not None else None
        except ValueError as e:
            return RequestOutcome.failure(ErrorCode.INVALID_TRANSITION, f"Unknown pickup status: {e}")
        now = now or self.clock()

        try:
            student_id = self.coordinator.read(
                lambda db: db.execute(
                    select(PickupRequest.student_id).where(PickupRequest.id == request_id)
                ).scalar_one_or_none()
            )
        except TransientStoreError as e:
            return RequestOutcome.failure(ErrorCode.TRANSIENT_IO, f"Pickup store unavailable: {e}")

        if student_id is None:
            return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Pickup request {request_id} not found")

        def operation(db: Session):
            return self._transition(db, actor, request_id, target, expected, now)

        try:
            outcome = self.coordinator.run(student_id, operation)
        except ConcurrentInsertError:
            # History row already written by a competing completion
            return RequestOutcome.failure(ErrorCode.CONFLICT, f"Pickup request {request_id} was completed concurrently")
        except TransientStoreError as e:
            return RequestOutcome.failure(ErrorCode.TRANSIENT_IO, f"Pickup store unavailable: {e}")

        if outcome.ok and outcome.changed:
            logger.info(f"Pickup request {request_id} -> {target.value} by {actor}")
        elif not outcome.ok:
            logger.info(f"Pickup request {request_id} -> {target.value} by {actor} refused: {outcome.error.value} {outcome.message}")
        return outcome

    def _transition(
        self,
        db: Session,
        actor: ActorContext,
        request_id: uuid.UUID,
        target: PickupStatus,
        expected: Optional[PickupStatus],
        now: datetime,
    ):
        row = self.coordinator.reload(db, request_id)
        if row is None:
            return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Pickup request {request_id} not found"), None

        class_id = db.execute(select(Student.class_id).where(Student.id == row.student_id)).scalar_one_or_none()
        current = PickupStatus(row.status)
        snapshot = PickupRequestSnapshot.from_row(row, class_id)

        if expected is not None and expected != current:
            return RequestOutcome.failure(
                ErrorCode.CONFLICT,
                f"Request is {current.value}, not {expected.value}; it was changed by someone else",
                request=snapshot,
            ), None

        if current.is_terminal:
            return RequestOutcome.failure(
                ErrorCode.ALREADY_TERMINAL, f"Request is already {current.value}", request=snapshot
            ), None

        denial = self._check_actor(db, actor, row, target, now)
        if denial is not None:
            return RequestOutcome.failure(ErrorCode.NOT_AUTHORIZED, denial, request=snapshot), None

        if target == current:
            return RequestOutcome.success(snapshot, changed=False, message=f"Request is already {current.value}"), None

        if target not in VALID_EDGES[current]:
            return RequestOutcome.failure(
                ErrorCode.INVALID_TRANSITION,
                f"Cannot move a {current.value} request to {target.value}",
                request=snapshot,
            ), None

        stored_now = to_storage(now)
        changes = {"status": target.value}
        if target == PickupStatus.CALLED:
            changes["called_time"] = stored_now
        elif target == PickupStatus.COMPLETED:
            changes["completed_time"] = stored_now

        cas = self.coordinator.compare_and_swap(db, request_id, current, changes, expected_version=row.version)
        if cas == CasResult.NOT_FOUND:
            return RequestOutcome.failure(ErrorCode.NOT_FOUND, f"Pickup request {request_id} not found"), None
        if cas == CasResult.CONFLICT:
            if expected is None:
                latest = self.coordinator.reload(db, request_id)
                if latest is not None and latest.status == target.value:
                    return RequestOutcome.success(
                        PickupRequestSnapshot.from_row(latest, class_id),
                        changed=False,
                        message=f"Request is already {target.value}",
                    ), None
            return RequestOutcome.failure(
                ErrorCode.CONFLICT, f"Request {request_id} changed while updating", request=snapshot
            ), None

        updated = self.coordinator.reload(db, request_id)
        if target == PickupStatus.COMPLETED:
            self._record_history(db, updated, actor)

        new_snapshot = PickupRequestSnapshot.from_row(updated, class_id)
        event = PickupRequestChangeEvent.for_change(new_snapshot, current, now)
        return RequestOutcome.success(new_snapshot), event

    def _check_actor(
        self,
        db: Session,
        actor: ActorContext,
        row: PickupRequest,
        target: PickupStatus,
        now: datetime,
    ) -> Optional[str]:
        """Return a denial message, or None when the actor may attempt this move."""
        required = REQUIRED_CAPABILITY.get(target)
        if required is not None:
            if actor.can(required):
                return None
            return f"{actor} lacks {required.value}"

        if target != PickupStatus.CANCELLED:
            return None

        if actor.can(Capability.CANCEL_ANY_REQUEST):
            return None
        if actor.party_id is None:
            return f"{actor} cannot cancel pickup requests"
        if actor.party_id == row.parent_id:
            return None
        if self.resolver(db).resolve(actor.party_id, row.student_id, now).permitted:
            return None
        return f"{actor} may only cancel requests they made or for students they may collect"

    def _record_history(self, db: Session, row: PickupRequest, actor: ActorContext):
        db.add(PickupHistory(
            request_id=row.id,
            student_id=row.student_id,
            parent_id=row.parent_id,
            request_time=row.request_time,
            called_time=row.called_time,
            completed_time=row.completed_time,
            pickup_duration_minutes=pickup_duration_minutes(row.request_time, row.completed_time),
            completed_by="sweeper" if actor.is_system else "staff",
        ))
        db.flush()

    def transition_with_retry(
        self,
        actor: ActorContext,
        request_id: uuid.UUID,
        target: StatusLike,
        expected_status: Optional[StatusLike] = None,
        now: Optional[datetime] = None,
    ) -> RequestOutcome:
        """
        ``transition`` that re-reads and re-decides after a lost race, at most
        ``max_retries`` times. A stale ``expected_status`` is not retried: the
        caller's view is out of date and re-reading will not change that.
        """
        outcome = self.transition(actor, request_id, target, expected_status, now)
        attempt = 0
        while outcome.error == ErrorCode.CONFLICT and attempt < self.max_retries:
            # CONFLICT means both statuses parsed
            stale = (
                expected_status is not None
                and outcome.request is not None
                and outcome.request.status != PickupStatus(expected_status)
            )
            if stale:
                break
            attempt += 1
            logger.info(f"Retrying transition of {request_id} to {PickupStatus(target).value} (attempt {attempt})")
            outcome = self.transition(actor, request_id, target, expected_status, now)
        return outcome

    def cancel(
        self,
        actor: ActorContext,
        request_id: uuid.UUID,
        expected_status: Optional[StatusLike] = None,
        now: Optional[datetime] = None,
    ) -> RequestOutcome:
        return self.transition_with_retry(actor, request_id, PickupStatus.CANCELLED, expected_status, now)
