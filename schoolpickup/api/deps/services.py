# schoolpickup/api/deps/services.py - Per-app service objects built in the lifespan
from fastapi import Depends, Request
from sqlalchemy.orm import Session
from typing import Generator

from schoolpickup.core.config import settings
from schoolpickup.services.authorization_service import AuthorizationService
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService
from schoolpickup.services.sweeper import AutoCompletionSweeper


def get_db(request: Request) -> Generator[Session, None, None]:
    """Request-scoped session from the app's DatabaseManager"""
    yield from request.app.state.db_manager.get_session()


def get_pickup_service(request: Request) -> PickupService:
    return request.app.state.pickups


def get_pickup_queries(request: Request) -> PickupQueries:
    return request.app.state.queries


def get_sweeper(request: Request) -> AutoCompletionSweeper:
    return request.app.state.sweeper


def get_authorization_service(db: Session = Depends(get_db)) -> AuthorizationService:
    return AuthorizationService(db, settings.school_tz)
