# schoolpickup/services/authorization_service.py - Granting and revoking pickup authorizations
import logging
import uuid
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from schoolpickup.models.authorization import PickupAuthorization
from schoolpickup.models.parent import Parent
from schoolpickup.models.student import Student
from schoolpickup.services.authorization_resolver import (
    ActorContext,
    AuthorizationResolver,
    AuthorizedPickup,
    Capability,
    Resolution,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("start_date", "end_date", "allowed_days_of_week", "is_active")


class AuthorizationValidationError(ValueError):
    """The requested authorization would break a window or weekday rule"""
    pass


class AuthorizationNotFoundError(LookupError):
    pass


class AuthorizationPermissionError(PermissionError):
    pass


def validate_window(start_date: date, end_date: date, allowed_days: Optional[Iterable[int]], is_active: bool = True) -> list[int]:
    """Check the window and weekday set; returns the weekdays sorted."""
    if start_date > end_date:
        raise AuthorizationValidationError(
            f"start_date {start_date.isoformat()} is after end_date {end_date.isoformat()}"
        )

    days = list(allowed_days or [])
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise AuthorizationValidationError(f"allowed_days_of_week values must be 0..6 (Sunday = 0), got {day!r}")
    if len(set(days)) != len(days):
        raise AuthorizationValidationError("allowed_days_of_week contains duplicates")
    if is_active and not days:
        raise AuthorizationValidationError("An active authorization needs at least one allowed day")
    return sorted(days)


class AuthorizationService:
    """Create, edit and deactivate authorizations; answer who-may-collect questions"""

    def __init__(self, db: Session, school_tz: ZoneInfo):
        self.db = db
        self.school_tz = school_tz
        self.resolver = AuthorizationResolver(db, school_tz)

    def _get(self, authorization_id: uuid.UUID) -> PickupAuthorization:
        authorization = self.db.get(PickupAuthorization, authorization_id)
        if authorization is None:
            raise AuthorizationNotFoundError(f"Authorization {authorization_id} not found")
        return authorization

    def _require_owner(self, actor: ActorContext, authorization: PickupAuthorization):
        if actor.can(Capability.MANAGE_AUTHORIZATIONS):
            return
        if actor.party_id != authorization.authorizing_parent_id:
            raise AuthorizationPermissionError("Only the authorizing parent can change this authorization")

    def create(
        self,
        actor: ActorContext,
        student_id: uuid.UUID,
        authorized_parent_id: uuid.UUID,
        start_date: date,
        end_date: date,
        allowed_days_of_week: Iterable[int],
        authorizing_parent_id: Optional[uuid.UUID] = None,
    ) -> PickupAuthorization:
        manager = actor.can(Capability.MANAGE_AUTHORIZATIONS)
        if authorizing_parent_id is None or not manager:
            authorizing_parent_id = actor.party_id
        if authorizing_parent_id is None:
            raise AuthorizationPermissionError(f"{actor} cannot grant pickup authorizations")

        days = validate_window(start_date, end_date, allowed_days_of_week)

        student = self.db.get(Student, student_id)
        if student is None or student.deleted_at is not None:
            raise AuthorizationNotFoundError(f"Student {student_id} not found")

        authorized = self.db.get(Parent, authorized_parent_id)
        if authorized is None or not authorized.is_active:
            raise AuthorizationNotFoundError(f"Parent {authorized_parent_id} not found")
        if authorized_parent_id == authorizing_parent_id:
            raise AuthorizationValidationError("A parent cannot authorize themselves")

        if not manager and not self.resolver.is_guardian(authorizing_parent_id, student_id):
            raise AuthorizationPermissionError("Only a guardian of the student can grant pickup authorizations")

        authorization = PickupAuthorization(
            student_id=student_id,
            authorizing_parent_id=authorizing_parent_id,
            authorized_parent_id=authorized_parent_id,
            start_date=start_date,
            end_date=end_date,
            allowed_days_of_week=days,
            is_active=True,
        )
        self.db.add(authorization)
        self.db.commit()
        self.db.refresh(authorization)

        logger.info(
            f"Authorization {authorization.id}: {authorized.name} may collect {student.full_name} "
            f"{start_date.isoformat()}..{end_date.isoformat()} on {days} (granted by {actor})"
        )
        return authorization

    def update(self, actor: ActorContext, authorization_id: uuid.UUID, changes: dict) -> PickupAuthorization:
        authorization = self._get(authorization_id)
        self._require_owner(actor, authorization)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise AuthorizationValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        merged = {field: getattr(authorization, field) for field in UPDATABLE_FIELDS}
        merged.update({k: v for k, v in changes.items() if v is not None})
        merged["allowed_days_of_week"] = validate_window(
            merged["start_date"], merged["end_date"], merged["allowed_days_of_week"], merged["is_active"],
        )

        for field, value in merged.items():
            setattr(authorization, field, value)
        self.db.commit()
        self.db.refresh(authorization)

        logger.info(f"Authorization {authorization_id} updated by {actor}: {sorted(changes)}")
        return authorization

    def deactivate(self, actor: ActorContext, authorization_id: uuid.UUID) -> PickupAuthorization:
        """Soft-revoke; rows are kept for audit."""
        authorization = self._get(authorization_id)
        self._require_owner(actor, authorization)

        if authorization.is_active:
            authorization.is_active = False
            self.db.commit()
            self.db.refresh(authorization)
            logger.info(f"Authorization {authorization_id} deactivated by {actor}")
        return authorization

    def list_for(self, actor: ActorContext, direction: str = "all", include_inactive: bool = False) -> list[PickupAuthorization]:
        """Authorizations the actor granted, received, or both."""
        query = select(PickupAuthorization).order_by(PickupAuthorization.start_date.desc())
        if direction == "granted":
            query = query.where(PickupAuthorization.authorizing_parent_id == actor.party_id)
        elif direction == "received":
            query = query.where(PickupAuthorization.authorized_parent_id == actor.party_id)
        elif direction == "all" and not actor.can(Capability.MANAGE_AUTHORIZATIONS):
            query = query.where(
                (PickupAuthorization.authorizing_parent_id == actor.party_id)
                | (PickupAuthorization.authorized_parent_id == actor.party_id)
            )
        elif direction != "all":
            raise AuthorizationValidationError(f"Unknown direction '{direction}'")

        if not include_inactive:
            query = query.where(PickupAuthorization.is_active.is_(True))
        return list(self.db.execute(query).scalars().all())

    def check(self, party_id: uuid.UUID, student_id: uuid.UUID, at_time: datetime) -> Resolution:
        return self.resolver.resolve(party_id, student_id, at_time)

    def authorized_parents_on(self, day: date, class_id: Optional[uuid.UUID] = None) -> list[AuthorizedPickup]:
        return self.resolver.authorized_parents_on(day, class_id)
