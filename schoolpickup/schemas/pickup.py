# schoolpickup/schemas/pickup.py - Pickup request API schemas
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID

from schoolpickup.models.pickup import PickupStatus


class PickupRequestCreate(BaseModel):
    student_id: UUID


class PickupTransitionIn(BaseModel):
    target_status: PickupStatus
    # The status the caller last saw; a mismatch is reported as a conflict
    expected_status: Optional[PickupStatus] = None

    class Config:
        json_schema_extra = {
            "example": {
                "target_status": "called",
                "expected_status": "pending"
            }
        }


class PickupCancelIn(BaseModel):
    expected_status: Optional[PickupStatus] = None


class PickupRequestOut(BaseModel):
    id: UUID
    student_id: UUID
    parent_id: UUID
    class_id: Optional[UUID] = None
    request_time: datetime
    status: PickupStatus
    called_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class PickupOutcomeOut(BaseModel):
    request: PickupRequestOut
    changed: bool
    message: str = ""


class PickupRequestList(BaseModel):
    requests: List[PickupRequestOut]
    total: int


class PickupHistoryOut(BaseModel):
    id: UUID
    request_id: UUID
    student_id: UUID
    parent_id: UUID
    request_time: datetime
    called_time: Optional[datetime] = None
    completed_time: datetime
    pickup_duration_minutes: Optional[int] = None
    completed_by: str

    class Config:
        from_attributes = True


class SweepErrorOut(BaseModel):
    request_id: Optional[UUID] = None
    error: str
    message: str


class SweepReportOut(BaseModel):
    completed: int
    skipped: int
    errors: List[SweepErrorOut] = []
