# schoolpickup/api/errors.py - Maps core outcomes onto HTTP responses
from fastapi import HTTPException, status

from schoolpickup.services.outcomes import ErrorCode, RequestOutcome

ERROR_STATUS = {
    ErrorCode.NOT_AUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ALREADY_ACTIVE: status.HTTP_409_CONFLICT,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_TRANSITION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.TRANSIENT_IO: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_detail(code: str, message: str, reason: str | None = None) -> dict:
    return {"code": code, "reason": reason, "message": message}


def raise_for_outcome(outcome: RequestOutcome) -> RequestOutcome:
    """Return successful outcomes unchanged; raise HTTPException for failures."""
    if outcome.ok:
        return outcome

    headers = {"Retry-After": "1"} if outcome.error == ErrorCode.TRANSIENT_IO else None
    raise HTTPException(
        status_code=ERROR_STATUS[outcome.error],
        detail=error_detail(
            outcome.error.value,
            outcome.message,
            outcome.reason.value if outcome.reason else None,
        ),
        headers=headers,
    )
