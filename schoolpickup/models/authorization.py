# schoolpickup/models/authorization.py - Time-boxed pickup authorizations
from __future__ import annotations
import uuid
from datetime import date, datetime
from sqlalchemy import Date, DateTime, Boolean, ForeignKey, CheckConstraint, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from schoolpickup.models.base import Base

ALL_DAYS = [0, 1, 2, 3, 4, 5, 6]


class PickupAuthorization(Base):
    __tablename__ = "pickup_authorizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True)
    authorizing_parent_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("parents.id"), nullable=False, index=True)
    authorized_parent_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("parents.id"), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Sunday = 0 ... Saturday = 6
    allowed_days_of_week: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=lambda: list(ALL_DAYS))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    student: Mapped["Student"] = relationship("Student")
    authorizing_parent: Mapped["Parent"] = relationship("Parent", foreign_keys=[authorizing_parent_id])
    authorized_parent: Mapped["Parent"] = relationship("Parent", foreign_keys=[authorized_parent_id])

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="window_ordered"),
    )

    def covers_date(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def allows_weekday(self, weekday: int) -> bool:
        return weekday in (self.allowed_days_of_week or [])
