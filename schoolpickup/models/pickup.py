# schoolpickup/models/pickup.py - Pickup requests and the completed-pickup history
from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint, Index, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from schoolpickup.models.base import Base


class PickupStatus(str, enum.Enum):
    PENDING = "pending"
    CALLED = "called"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({PickupStatus.PENDING, PickupStatus.CALLED})
TERMINAL_STATUSES = frozenset({PickupStatus.COMPLETED, PickupStatus.CANCELLED})

_ACTIVE_SQL = text("status IN ('pending', 'called')")


class PickupRequest(Base):
    __tablename__ = "pickup_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True)
    parent_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("parents.id"), nullable=False, index=True)
    request_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PickupStatus.PENDING.value, index=True)
    called_time: Mapped[datetime | None] = mapped_column(DateTime)
    completed_time: Mapped[datetime | None] = mapped_column(DateTime)
    # Bumped by every committed transition; compare-and-swap guard
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    student: Mapped["Student"] = relationship("Student")
    parent: Mapped["Parent"] = relationship("Parent")

    __table_args__ = (
        CheckConstraint("status IN ('pending','called','completed','cancelled')", name="status_valid"),
        # At most one active request per student
        Index(
            "uq_pickup_requests_active_student",
            "student_id",
            unique=True,
            sqlite_where=_ACTIVE_SQL,
            postgresql_where=_ACTIVE_SQL,
        ),
    )

    def __repr__(self):
        return f"<PickupRequest(id={self.id}, student_id={self.student_id}, status={self.status}, version={self.version})>"


class PickupHistory(Base):
    __tablename__ = "pickup_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pickup_requests.id"), nullable=False, unique=True)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True)
    parent_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("parents.id"), nullable=False, index=True)
    request_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    called_time: Mapped[datetime | None] = mapped_column(DateTime)
    completed_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    pickup_duration_minutes: Mapped[int | None] = mapped_column(Integer)
    completed_by: Mapped[str] = mapped_column(String(16), nullable=False, default="staff")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("completed_by IN ('staff','sweeper')", name="completed_by_valid"),
    )
