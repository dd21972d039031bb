# schoolpickup/api/routers/authorizations.py - Pickup authorization management
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
from datetime import date, datetime
from uuid import UUID
import logging

from schoolpickup.api.deps.auth import get_current_actor, require_capability
from schoolpickup.api.deps.services import get_authorization_service
from schoolpickup.api.errors import error_detail
from schoolpickup.core.clock import utcnow
from schoolpickup.core.config import settings
from schoolpickup.services.authorization_resolver import ActorContext, Capability
from schoolpickup.services.authorization_service import (
    AuthorizationNotFoundError,
    AuthorizationPermissionError,
    AuthorizationService,
    AuthorizationValidationError,
)
from schoolpickup.schemas.authorization import (
    AuthorizationCheckOut,
    AuthorizationCreate,
    AuthorizationOut,
    AuthorizationUpdate,
    AuthorizedParentOut,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _raise_http(error: Exception):
    if isinstance(error, AuthorizationNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail("NOT_FOUND", str(error))
        )
    if isinstance(error, AuthorizationPermissionError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_detail("NOT_AUTHORIZED", str(error))
        )
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=error_detail("INVALID_AUTHORIZATION", str(error))
    )


_SERVICE_ERRORS = (AuthorizationNotFoundError, AuthorizationPermissionError, AuthorizationValidationError)


@router.post("", response_model=AuthorizationOut, status_code=status.HTTP_201_CREATED)
def create_authorization(
    data: AuthorizationCreate,
    actor: ActorContext = Depends(get_current_actor),
    service: AuthorizationService = Depends(get_authorization_service)
):
    """Let another parent collect one of the caller's children within a date window"""
    try:
        return service.create(
            actor,
            student_id=data.student_id,
            authorized_parent_id=data.authorized_parent_id,
            start_date=data.start_date,
            end_date=data.end_date,
            allowed_days_of_week=data.allowed_days_of_week,
            authorizing_parent_id=data.authorizing_parent_id,
        )
    except _SERVICE_ERRORS as e:
        _raise_http(e)


@router.get("", response_model=List[AuthorizationOut])
def list_authorizations(
    direction: str = Query("all", pattern="^(all|granted|received)$"),
    include_inactive: bool = Query(False),
    actor: ActorContext = Depends(get_current_actor),
    service: AuthorizationService = Depends(get_authorization_service)
):
    """Authorizations the caller granted, received, or both"""
    return service.list_for(actor, direction, include_inactive)


@router.get("/check", response_model=AuthorizationCheckOut)
def check_authorization(
    student_id: UUID,
    parent_id: Optional[UUID] = Query(None),
    at: Optional[datetime] = Query(None, description="Defaults to now"),
    actor: ActorContext = Depends(get_current_actor),
    service: AuthorizationService = Depends(get_authorization_service)
):
    """Would this parent (default: the caller) be allowed to collect the student?"""
    party_id = parent_id or actor.party_id
    if party_id != actor.party_id and not actor.can(Capability.VIEW_ALL_REQUESTS):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_detail("NOT_AUTHORIZED", "Only staff can check other parents")
        )

    resolution = service.check(party_id, student_id, at or utcnow())
    if not resolution.found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail("NOT_FOUND", resolution.message)
        )
    return AuthorizationCheckOut(
        permitted=resolution.permitted,
        reason=resolution.reason.value if resolution.reason else None,
        message=resolution.message,
        via_guardian_link=resolution.via_guardian_link,
        authorization_id=resolution.authorization_id
    )


@router.get("/by-date", response_model=List[AuthorizedParentOut])
def authorized_parents_by_date(
    on: Optional[date] = Query(None, description="School-local date, defaults to today"),
    class_id: Optional[UUID] = Query(None),
    actor: ActorContext = Depends(require_capability(Capability.VIEW_ALL_REQUESTS)),
    service: AuthorizationService = Depends(get_authorization_service)
):
    """Who, besides guardians, may collect which students on a date"""
    day = on or utcnow().astimezone(settings.school_tz).date()
    return [
        AuthorizedParentOut(
            authorization_id=item.authorization.id,
            parent_id=item.parent.id,
            parent_name=item.parent.name,
            parent_phone=item.parent.phone,
            student_id=item.student.id,
            student_name=item.student.full_name,
            class_id=item.student.class_id,
            end_date=item.authorization.end_date,
            allowed_days_of_week=item.authorization.allowed_days_of_week,
        )
        for item in service.authorized_parents_on(day, class_id)
    ]


@router.patch("/{authorization_id}", response_model=AuthorizationOut)
def update_authorization(
    authorization_id: UUID,
    data: AuthorizationUpdate,
    actor: ActorContext = Depends(get_current_actor),
    service: AuthorizationService = Depends(get_authorization_service)
):
    try:
        return service.update(actor, authorization_id, data.model_dump(exclude_unset=True))
    except _SERVICE_ERRORS as e:
        _raise_http(e)


@router.post("/{authorization_id}/deactivate", response_model=AuthorizationOut)
def deactivate_authorization(
    authorization_id: UUID,
    actor: ActorContext = Depends(get_current_actor),
    service: AuthorizationService = Depends(get_authorization_service)
):
    """Revoke an authorization; the row is kept"""
    try:
        return service.deactivate(actor, authorization_id)
    except _SERVICE_ERRORS as e:
        _raise_http(e)
