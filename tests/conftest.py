"""
Shared fixtures for the pickup service tests.

Every test gets its own SQLite file database (file-backed so that worker
threads share it) and a fixed clock. Settings are read at import time, so the
environment is prepared before anything from ``schoolpickup`` is imported.
"""

from __future__ import annotations

import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-0123456789")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from schoolpickup.core.db import DatabaseManager
from schoolpickup.core.security import create_access_token, hash_password
from schoolpickup.models import (
    Base,
    Class,
    Parent,
    ParentRole,
    PickupAuthorization,
    PickupRequest,
    Student,
    StudentParent,
)
from schoolpickup.models.authorization import ALL_DAYS
from schoolpickup.services.authorization_resolver import ActorContext
from schoolpickup.services.mutation_coordinator import MutationCoordinator
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService

UTC_TZ = ZoneInfo("UTC")
PASSWORD = "pickup-password-123"

# Tuesday afternoon; Tuesday is weekday 2 with Sunday = 0
TUESDAY = datetime(2025, 10, 21, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = TUESDAY):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingBus:
    """Stands in for EventBus where tests only need to see what was published."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 1


class Factory:
    """Builds committed rows with sensible defaults."""

    def __init__(self, session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def parent(self, name: str = "Pat Parent", role: ParentRole = ParentRole.PARENT, **kwargs) -> Parent:
        slug = kwargs.pop("username", None) or f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}"
        return self._save(Parent(
            name=name,
            email=kwargs.pop("email", f"{slug}@example.com"),
            username=slug,
            role=role.value,
            password_hash=hash_password(PASSWORD),
            **kwargs,
        ))

    def school_class(self, name: str = "Sunflowers", grade: str = "2") -> Class:
        return self._save(Class(name=name, grade=grade, teacher_name="Ms. Rivera"))

    def student(self, first_name: str = "Ada", last_name: str = "Lovelace", school_class: Class | None = None,
                guardians: tuple[Parent, ...] = ()) -> Student:
        student = self._save(Student(
            first_name=first_name,
            last_name=last_name,
            class_id=school_class.id if school_class else None,
        ))
        for index, guardian in enumerate(guardians):
            self._save(StudentParent(student_id=student.id, parent_id=guardian.id, is_primary=index == 0))
        return student

    def authorization(self, student: Student, authorizing: Parent, authorized: Parent,
                      start: date = date(2025, 10, 1), end: date = date(2025, 10, 31),
                      days=None, is_active: bool = True) -> PickupAuthorization:
        return self._save(PickupAuthorization(
            student_id=student.id,
            authorizing_parent_id=authorizing.id,
            authorized_parent_id=authorized.id,
            start_date=start,
            end_date=end,
            allowed_days_of_week=list(ALL_DAYS if days is None else days),
            is_active=is_active,
        ))


def actor_for(parent: Parent) -> ActorContext:
    return ActorContext.for_parent(parent)


def token_for(parent: Parent) -> str:
    return create_access_token({"sub": str(parent.id), "role": parent.role})


def auth_headers(parent: Parent) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(parent)}"}


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_manager(tmp_path):
    manager = DatabaseManager(url=f"sqlite:///{tmp_path / 'pickup.db'}", echo=False)
    manager.initialize()
    Base.metadata.create_all(bind=manager.engine)
    yield manager
    manager.close()


@pytest.fixture
def other_db_manager(db_manager):
    """A second engine on the same file, standing in for another worker process."""
    manager = DatabaseManager(url=db_manager.url, echo=False)
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def session(db_manager):
    db = db_manager.SessionLocal()
    yield db
    db.close()


@pytest.fixture
def factory(session) -> Factory:
    return Factory(session)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def coordinator(db_manager, bus) -> MutationCoordinator:
    return MutationCoordinator(db_manager.SessionLocal, bus)


@pytest.fixture
def pickups(coordinator, clock) -> PickupService:
    return PickupService(coordinator, UTC_TZ, clock=clock, max_retries=2)


@pytest.fixture
def queries(coordinator, clock) -> PickupQueries:
    return PickupQueries(coordinator, UTC_TZ, clock=clock)


# =============================================================================
# A small school
# =============================================================================


@pytest.fixture
def school(factory):
    """One class, one student with a guardian, plus staff and an outsider."""
    sunflowers = factory.school_class()
    guardian = factory.parent("Grace Guardian")
    student = factory.student(school_class=sunflowers, guardians=(guardian,))
    return {
        "class": sunflowers,
        "guardian": guardian,
        "student": student,
        "teacher": factory.parent("Tess Teacher", role=ParentRole.TEACHER),
        "admin": factory.parent("Alan Admin", role=ParentRole.ADMIN),
        "outsider": factory.parent("Oscar Outsider"),
        "family": factory.parent("Fran Family", role=ParentRole.FAMILY),
    }


@pytest.fixture
def pending_request(pickups, school):
    outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)
    assert outcome.ok, outcome.message
    return outcome.request


def load_request(session, request_id) -> PickupRequest:
    session.expire_all()
    return session.get(PickupRequest, request_id)
