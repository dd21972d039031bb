# schoolpickup/services/authorization_resolver.py
"""
Who may act on which student, and when.

Two questions are answered here and nowhere else:

* ``AuthorizationResolver.resolve`` - may this party collect this student at
  this moment? Direct guardians always may; everyone else needs an active
  pickup authorization whose date window and weekday set cover the moment.
* ``has_capability`` - may this actor perform a staff/admin operation? Roles
  map to a fixed capability set instead of being compared as strings at each
  call site.
"""
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from schoolpickup.core.clock import js_weekday, to_school_time
from schoolpickup.models.authorization import PickupAuthorization
from schoolpickup.models.parent import Parent, ParentRole
from schoolpickup.models.student import Student, StudentParent
from schoolpickup.services.outcomes import DenialReason

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class Capability(str, enum.Enum):
    REQUEST_PICKUP = "REQUEST_PICKUP"
    CALL_STUDENTS = "CALL_STUDENTS"
    COMPLETE_PICKUPS = "COMPLETE_PICKUPS"
    CANCEL_ANY_REQUEST = "CANCEL_ANY_REQUEST"
    MANAGE_AUTHORIZATIONS = "MANAGE_AUTHORIZATIONS"
    VIEW_ALL_REQUESTS = "VIEW_ALL_REQUESTS"
    RUN_SWEEP = "RUN_SWEEP"


_GUARDIAN = frozenset({Capability.REQUEST_PICKUP})
_STAFF = _GUARDIAN | {
    Capability.CALL_STUDENTS,
    Capability.COMPLETE_PICKUPS,
    Capability.VIEW_ALL_REQUESTS,
}
_ADMIN = _STAFF | {
    Capability.CANCEL_ANY_REQUEST,
    Capability.MANAGE_AUTHORIZATIONS,
    Capability.RUN_SWEEP,
}

ROLE_CAPABILITIES: dict[ParentRole, frozenset[Capability]] = {
    ParentRole.PARENT: _GUARDIAN,
    ParentRole.FAMILY: _GUARDIAN,
    ParentRole.OTHER: _GUARDIAN,
    ParentRole.TEACHER: frozenset(_STAFF),
    ParentRole.ADMIN: frozenset(_ADMIN),
    ParentRole.SUPERADMIN: frozenset(_ADMIN),
}

# Background jobs act through the same state machine as people do
SYSTEM_CAPABILITIES = frozenset({Capability.COMPLETE_PICKUPS, Capability.RUN_SWEEP})


@dataclass(frozen=True)
class ActorContext:
    """The identity on whose behalf a core call runs; resolved by the API layer."""
    party_id: Optional[uuid.UUID]
    role: Optional[ParentRole]
    name: str = ""
    is_system: bool = False

    @classmethod
    def for_parent(cls, parent: Parent) -> "ActorContext":
        return cls(party_id=parent.id, role=ParentRole(parent.role), name=parent.name)

    @classmethod
    def system(cls, name: str) -> "ActorContext":
        return cls(party_id=None, role=None, name=name, is_system=True)

    @property
    def capabilities(self) -> frozenset[Capability]:
        if self.is_system:
            return SYSTEM_CAPABILITIES
        return ROLE_CAPABILITIES.get(self.role, frozenset())

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def __str__(self):
        return self.name or ("system" if self.is_system else str(self.party_id))


def has_capability(actor: ActorContext, capability: Capability) -> bool:
    return actor.can(capability)


@dataclass(frozen=True)
class Resolution:
    permitted: bool
    reason: Optional[DenialReason] = None
    message: str = ""
    via_guardian_link: bool = False
    authorization_id: Optional[uuid.UUID] = None
    found: bool = True


@dataclass(frozen=True)
class AuthorizedPickup:
    """One (authorization, authorized parent, student) triple valid on a date."""
    authorization: PickupAuthorization
    parent: Parent
    student: Student


class AuthorizationResolver:
    """Read-only pickup permission checks against the current authorization state"""

    def __init__(self, db: Session, school_tz: ZoneInfo):
        self.db = db
        self.school_tz = school_tz

    def is_guardian(self, party_id: uuid.UUID, student_id: uuid.UUID) -> bool:
        link = self.db.execute(
            select(StudentParent.id).where(
                StudentParent.parent_id == party_id,
                StudentParent.student_id == student_id,
            ).limit(1)
        ).scalar_one_or_none()
        return link is not None

    def resolve(self, party_id: uuid.UUID, student_id: uuid.UUID, at_time: datetime) -> Resolution:
        """Decide whether ``party_id`` may collect ``student_id`` at ``at_time``."""
        party = self.db.get(Parent, party_id)
        if party is None or not party.is_active:
            return Resolution(permitted=False, found=False, message=f"Parent {party_id} not found")
        student = self.db.get(Student, student_id)
        if student is None or student.deleted_at is not None:
            return Resolution(permitted=False, found=False, message=f"Student {student_id} not found")

        if self.is_guardian(party_id, student_id):
            return Resolution(permitted=True, via_guardian_link=True, message="Direct guardian")

        authorizations = self.db.execute(
            select(PickupAuthorization).where(
                PickupAuthorization.authorized_parent_id == party_id,
                PickupAuthorization.student_id == student_id,
            )
        ).scalars().all()

        local = to_school_time(at_time, self.school_tz)
        return self.evaluate(authorizations, local.date())

    @staticmethod
    def evaluate(authorizations, day: date) -> Resolution:
        """Apply the window and weekday rules to the authorizations of one (party, student) pair."""
        if not authorizations:
            return Resolution(
                permitted=False,
                reason=DenialReason.NO_RELATIONSHIP,
                message="No guardian link or pickup authorization for this student",
            )

        active = [a for a in authorizations if a.is_active]
        if not active:
            return Resolution(
                permitted=False,
                reason=DenialReason.AUTHORIZATION_INACTIVE,
                message="Pickup authorization has been deactivated",
            )

        weekday = js_weekday(day)
        in_window = [a for a in active if a.covers_date(day)]
        for authorization in in_window:
            if authorization.allows_weekday(weekday):
                return Resolution(
                    permitted=True,
                    authorization_id=authorization.id,
                    message=f"Authorized until {authorization.end_date.isoformat()}",
                )

        if in_window:
            allowed = sorted({d for a in in_window for d in (a.allowed_days_of_week or [])})
            allowed_names = ", ".join(WEEKDAY_NAMES[d] for d in allowed) or "no days"
            return Resolution(
                permitted=False,
                reason=DenialReason.DAY_NOT_ALLOWED,
                message=f"Not authorized on {WEEKDAY_NAMES[weekday]}s (allowed: {allowed_names})",
            )

        upcoming = [a.start_date for a in active if a.start_date > day]
        if upcoming:
            message = f"Authorization window starts on {min(upcoming).isoformat()}"
        else:
            message = f"Authorization expired on {max(a.end_date for a in active).isoformat()}"
        return Resolution(permitted=False, reason=DenialReason.AUTHORIZATION_EXPIRED, message=message)

    def permitted_students(self, party_id: uuid.UUID, at_time: datetime) -> set[uuid.UUID]:
        """Students the party may collect at ``at_time``: own children plus currently authorized ones."""
        own = self.db.execute(
            select(StudentParent.student_id).where(StudentParent.parent_id == party_id)
        ).scalars().all()

        local_day = to_school_time(at_time, self.school_tz).date()
        weekday = js_weekday(local_day)
        candidates = self.db.execute(
            select(PickupAuthorization).where(
                PickupAuthorization.authorized_parent_id == party_id,
                PickupAuthorization.is_active.is_(True),
                PickupAuthorization.start_date <= local_day,
                PickupAuthorization.end_date >= local_day,
            )
        ).scalars().all()

        students = set(own)
        students.update(a.student_id for a in candidates if a.allows_weekday(weekday))
        return students

    def authorized_parents_on(self, day: date, class_id: Optional[uuid.UUID] = None) -> list[AuthorizedPickup]:
        """Authorizations valid on ``day`` (window and weekday), optionally limited to one class."""
        query = (
            select(PickupAuthorization, Parent, Student)
            .join(Parent, Parent.id == PickupAuthorization.authorized_parent_id)
            .join(Student, Student.id == PickupAuthorization.student_id)
            .where(
                PickupAuthorization.is_active.is_(True),
                PickupAuthorization.start_date <= day,
                PickupAuthorization.end_date >= day,
                Student.deleted_at.is_(None),
            )
            .order_by(Student.last_name, Student.first_name, Parent.name)
        )
        if class_id:
            query = query.where(Student.class_id == class_id)

        weekday = js_weekday(day)
        return [
            AuthorizedPickup(authorization=auth, parent=parent, student=student)
            for auth, parent, student in self.db.execute(query).all()
            if auth.allows_weekday(weekday)
        ]
