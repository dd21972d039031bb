# schoolpickup/models/parent.py - Parents, guardians and staff share one identity table
from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, CheckConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from schoolpickup.models.base import Base


class ParentRole(str, enum.Enum):
    """Roles carried by a parents row"""
    PARENT = "parent"
    FAMILY = "family"           # Relative registered by a parent
    OTHER = "other"             # Babysitter, carpool driver, etc.
    TEACHER = "teacher"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class Parent(Base):
    __tablename__ = "parents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # Username-only accounts (family members without email) are allowed
    email: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    username: Mapped[str | None] = mapped_column(String(64), unique=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(32))
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ParentRole.PARENT.value)
    password_hash: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "role IN ('parent','family','other','teacher','admin','superadmin')",
            name="role_valid",
        ),
        CheckConstraint("email IS NOT NULL OR username IS NOT NULL", name="has_identifier"),
    )

    @property
    def parent_role(self) -> ParentRole:
        return ParentRole(self.role)

    def __repr__(self):
        return f"<Parent(id={self.id}, name='{self.name}', role={self.role})>"
