# schoolpickup/api/routers/auth.py - Token login for parents and staff
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import select, or_
import logging

from schoolpickup.api.deps.auth import get_current_parent
from schoolpickup.api.deps.services import get_db
from schoolpickup.core.security import token_manager, password_manager
from schoolpickup.models.parent import Parent
from schoolpickup.schemas.auth import LoginIn, TokenOut

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/token", response_model=TokenOut)
def login(
    credentials: LoginIn,
    db: Session = Depends(get_db)
):
    """Authenticate by email or username and return an access token"""

    parent = db.execute(
        select(Parent).where(
            or_(Parent.email == credentials.login, Parent.username == credentials.login)
        )
    ).scalar_one_or_none()

    if not parent or not password_manager.verify_password(credentials.password, parent.password_hash):
        logger.info(f"Failed login for {credentials.login}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect login or password"
        )

    if not parent.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is deactivated"
        )

    access_token = token_manager.create_access_token(
        subject=str(parent.id),
        additional_claims={"role": parent.role, "name": parent.name}
    )
    logger.info(f"Parent logged in: {credentials.login} ({parent.role})")

    return TokenOut(
        access_token=access_token,
        parent_id=parent.id,
        role=parent.role,
        name=parent.name
    )


@router.get("/me")
def me(parent: Parent = Depends(get_current_parent)):
    return {
        "id": str(parent.id),
        "name": parent.name,
        "email": parent.email,
        "username": parent.username,
        "role": parent.role,
    }
