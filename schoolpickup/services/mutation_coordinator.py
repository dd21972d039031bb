# schoolpickup/services/mutation_coordinator.py - Serialized, conflict-checked writes to pickup requests
import enum
import logging
import threading
import uuid
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from schoolpickup.models.pickup import PickupRequest, PickupStatus
from schoolpickup.services.event_bus import EventBus
from schoolpickup.services.outcomes import PickupRequestChangeEvent

logger = logging.getLogger(__name__)

Operation = Callable[[Session], "tuple[Any, Optional[PickupRequestChangeEvent]]"]


class CasResult(str, enum.Enum):
    APPLIED = "APPLIED"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"


class TransientStoreError(Exception):
    """The store could not be reached or rejected the write for a non-data reason"""
    pass


class ConcurrentInsertError(Exception):
    """A uniqueness constraint rejected the write; another writer got there first"""
    pass


class MutationCoordinator:
    """
    Runs one pickup mutation at a time per student.

    Each operation gets its own session and is committed before its change
    event is published; both happen under the student's lock so subscribers
    see a student's events in commit order. Across processes the conditional
    UPDATE in ``compare_and_swap`` is what keeps concurrent writers honest.
    """

    def __init__(self, session_factory: sessionmaker, bus: Optional[EventBus] = None, stripes: int = 64):
        self.session_factory = session_factory
        self.bus = bus
        self._locks = [threading.Lock() for _ in range(stripes)]

    def lock_for(self, student_id: uuid.UUID) -> threading.Lock:
        return self._locks[hash(student_id) % len(self._locks)]

    @staticmethod
    def compare_and_swap(
        db: Session,
        request_id: uuid.UUID,
        expected_status: PickupStatus,
        changes: dict,
        expected_version: Optional[int] = None,
    ) -> CasResult:
        """Apply ``changes`` only if the row still has ``expected_status`` (and version)."""
        stmt = (
            update(PickupRequest)
            .where(
                PickupRequest.id == request_id,
                PickupRequest.status == expected_status.value,
            )
            .values(**changes, version=PickupRequest.version + 1)
            .execution_options(synchronize_session=False)
        )
        if expected_version is not None:
            stmt = stmt.where(PickupRequest.version == expected_version)

        result = db.execute(stmt)
        if result.rowcount == 1:
            return CasResult.APPLIED

        still_there = db.execute(
            select(PickupRequest.id).where(PickupRequest.id == request_id)
        ).scalar_one_or_none()
        if still_there is None:
            return CasResult.NOT_FOUND

        logger.warning(
            f"Compare-and-swap lost on request {request_id} "
            f"(expected {expected_status.value}, version {expected_version})"
        )
        return CasResult.CONFLICT

    @staticmethod
    def reload(db: Session, request_id: uuid.UUID) -> Optional[PickupRequest]:
        """Fetch the row again, overwriting whatever the session has cached."""
        return db.execute(
            select(PickupRequest)
            .where(PickupRequest.id == request_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def run(self, student_id: uuid.UUID, operation: Operation):
        """
        Execute ``operation(db)`` for one student, commit, then publish.

        The operation returns ``(result, event)``; ``event`` may be None when
        nothing changed. Returns ``result``.

        Raises:
            ConcurrentInsertError: a unique constraint rejected the write
            TransientStoreError: any other database failure
        """
        with self.lock_for(student_id):
            db = self.session_factory()
            try:
                result, event = operation(db)
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.info(f"Integrity conflict for student {student_id}: {e.orig}")
                raise ConcurrentInsertError(str(e.orig)) from e
            except DBAPIError as e:
                db.rollback()
                logger.error(f"Store error for student {student_id}: {e}")
                raise TransientStoreError(str(e.orig) if e.orig else str(e)) from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            if event is not None and self.bus is not None:
                self.bus.publish(event)
            return result

    def read(self, query: Callable[[Session], Any]):
        """Run a read-only callable in a short-lived session."""
        db = self.session_factory()
        try:
            return query(db)
        except DBAPIError as e:
            logger.error(f"Store error during read: {e}")
            raise TransientStoreError(str(e.orig) if e.orig else str(e)) from e
        finally:
            db.close()
