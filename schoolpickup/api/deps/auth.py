# schoolpickup/api/deps/auth.py - Bearer token -> ActorContext, capability gates
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from uuid import UUID

from schoolpickup.api.deps.services import get_db
from schoolpickup.core.security import decode_token
from schoolpickup.models.parent import Parent
from schoolpickup.services.authorization_resolver import ActorContext, Capability

security = HTTPBearer()


def parent_from_token(token: str, db: Session) -> Parent:
    """
    Decode a JWT and load the parent it names.

    Raises:
        HTTPException: 401 for bad tokens, unknown or deactivated accounts
    """
    claims = decode_token(token)

    # sub is stored as a string
    parent_id_str = claims.get("sub")
    if not parent_id_str:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing subject"
        )

    try:
        parent_id = UUID(parent_id_str)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid subject format"
        )

    parent = db.get(Parent, parent_id)
    if not parent:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account not found"
        )

    if not parent.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account deactivated"
        )
    return parent


def get_current_parent(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Parent:
    return parent_from_token(credentials.credentials, db)


def get_current_actor(parent: Parent = Depends(get_current_parent)) -> ActorContext:
    """The explicit identity every core call runs as"""
    return ActorContext.for_parent(parent)


def require_capability(capability: Capability):
    """
    Create a dependency that requires one capability.
    Usage: @router.post("/sweep", dependencies=[Depends(require_capability(Capability.RUN_SWEEP))])
    """
    def capability_checker(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
        if not actor.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "NOT_AUTHORIZED",
                    "reason": None,
                    "message": f"{capability.value} required",
                }
            )
        return actor
    return capability_checker
