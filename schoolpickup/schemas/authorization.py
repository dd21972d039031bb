# schoolpickup/schemas/authorization.py - Pickup authorization API schemas
from pydantic import BaseModel, validator
from typing import Optional, List
from datetime import date, datetime
from uuid import UUID

from schoolpickup.models.authorization import ALL_DAYS


class AuthorizationCreate(BaseModel):
    student_id: UUID
    authorized_parent_id: UUID
    start_date: date
    end_date: date
    allowed_days_of_week: List[int] = ALL_DAYS
    # Only honoured for administrators acting on a guardian's behalf
    authorizing_parent_id: Optional[UUID] = None

    @validator("end_date")
    def validate_window(cls, v, values):
        start = values.get("start_date")
        if start and v < start:
            raise ValueError("end_date must be on or after start_date")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "student_id": "0b0c6f9e-0f57-4f4e-9d1c-7c2e52a8f111",
                "authorized_parent_id": "5a1d2b3c-4e5f-6a7b-8c9d-0e1f2a3b4c5d",
                "start_date": "2025-09-01",
                "end_date": "2025-12-19",
                "allowed_days_of_week": [1, 3]
            }
        }


class AuthorizationUpdate(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    allowed_days_of_week: Optional[List[int]] = None
    is_active: Optional[bool] = None


class AuthorizationOut(BaseModel):
    id: UUID
    student_id: UUID
    authorizing_parent_id: UUID
    authorized_parent_id: UUID
    start_date: date
    end_date: date
    allowed_days_of_week: List[int]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AuthorizationCheckOut(BaseModel):
    permitted: bool
    reason: Optional[str] = None
    message: str
    via_guardian_link: bool = False
    authorization_id: Optional[UUID] = None


class AuthorizedParentOut(BaseModel):
    authorization_id: UUID
    parent_id: UUID
    parent_name: str
    parent_phone: Optional[str] = None
    student_id: UUID
    student_name: str
    class_id: Optional[UUID] = None
    end_date: date
    allowed_days_of_week: List[int]
