# schoolpickup/services/outcomes.py - Typed results returned by the pickup core
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from schoolpickup.models.pickup import PickupRequest, PickupStatus


class ErrorCode(str, enum.Enum):
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    TRANSIENT_IO = "TRANSIENT_IO"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCode.CONFLICT, ErrorCode.TRANSIENT_IO)


class DenialReason(str, enum.Enum):
    NO_RELATIONSHIP = "NO_RELATIONSHIP"
    AUTHORIZATION_EXPIRED = "AUTHORIZATION_EXPIRED"
    DAY_NOT_ALLOWED = "DAY_NOT_ALLOWED"
    AUTHORIZATION_INACTIVE = "AUTHORIZATION_INACTIVE"


@dataclass(frozen=True)
class PickupRequestSnapshot:
    """Immutable copy of a pickup_requests row, safe to hand across threads."""
    id: uuid.UUID
    student_id: uuid.UUID
    parent_id: uuid.UUID
    request_time: datetime
    status: PickupStatus
    version: int
    called_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    class_id: Optional[uuid.UUID] = None

    @classmethod
    def from_row(cls, row: PickupRequest, class_id: Optional[uuid.UUID] = None) -> "PickupRequestSnapshot":
        return cls(
            id=row.id,
            student_id=row.student_id,
            parent_id=row.parent_id,
            request_time=row.request_time,
            status=PickupStatus(row.status),
            version=row.version,
            called_time=row.called_time,
            completed_time=row.completed_time,
            class_id=class_id,
        )

    @property
    def is_active(self) -> bool:
        return self.status.is_active


@dataclass(frozen=True)
class RequestOutcome:
    """Result of create/transition; failures carry a code instead of raising."""
    request: Optional[PickupRequestSnapshot] = None
    error: Optional[ErrorCode] = None
    reason: Optional[DenialReason] = None
    message: str = ""
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, request: PickupRequestSnapshot, changed: bool = True, message: str = "") -> "RequestOutcome":
        return cls(request=request, changed=changed, message=message)

    @classmethod
    def failure(
        cls,
        error: ErrorCode,
        message: str,
        reason: Optional[DenialReason] = None,
        request: Optional[PickupRequestSnapshot] = None,
    ) -> "RequestOutcome":
        return cls(request=request, error=error, reason=reason, message=message)


@dataclass(frozen=True)
class PickupRequestChangeEvent:
    request_id: uuid.UUID
    student_id: uuid.UUID
    previous_status: Optional[PickupStatus]
    new_status: PickupStatus
    timestamp: datetime
    version: int
    parent_id: Optional[uuid.UUID] = None
    class_id: Optional[uuid.UUID] = None

    @classmethod
    def for_change(
        cls,
        snapshot: PickupRequestSnapshot,
        previous_status: Optional[PickupStatus],
        timestamp: datetime,
    ) -> "PickupRequestChangeEvent":
        return cls(
            request_id=snapshot.id,
            student_id=snapshot.student_id,
            previous_status=previous_status,
            new_status=snapshot.status,
            timestamp=timestamp,
            version=snapshot.version,
            parent_id=snapshot.parent_id,
            class_id=snapshot.class_id,
        )

    def to_dict(self) -> dict:
        return {
            "request_id": str(self.request_id),
            "student_id": str(self.student_id),
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "parent_id": str(self.parent_id) if self.parent_id else None,
            "class_id": str(self.class_id) if self.class_id else None,
        }


@dataclass
class SweepError:
    request_id: Optional[uuid.UUID]
    error: str
    message: str


@dataclass
class SweepReport:
    completed: int = 0
    skipped: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["errors"] = [
            {"request_id": str(e.request_id) if e.request_id else None, "error": e.error, "message": e.message}
            for e in self.errors
        ]
        return data
