from __future__ import annotations

"""
Core data models for service scheduling and attendance check-in.

Tokens are not stored here; see token_store.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


METHOD_QR_ROTATING = "QR_ROTATING"
METHOD_QR_STATIC = "QR_STATIC"
METHOD_MANUAL = "MANUAL"
ATTENDANCE_METHODS = (METHOD_QR_ROTATING, METHOD_QR_STATIC, METHOD_MANUAL)

CATEGORY_MEMBER = "MEMBER"
CATEGORY_VISITOR = "VISITOR"
ATTENDEE_CATEGORIES = (CATEGORY_MEMBER, CATEGORY_VISITOR)


class ServiceTemplate(Base):
    """Recurring service definition (e.g., Sunday Service) that occurrences are scheduled from."""

    __tablename__ = "service_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    default_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    campus: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ServiceOccurrence(Base):
    """One concrete scheduled instance of a template."""

    __tablename__ = "service_occurrences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("service_templates.id"), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    template: Mapped[ServiceTemplate] = relationship(ServiceTemplate, lazy="joined")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_occurrence_end_after_start"),
        Index("ix_occurrences_template_id", "template_id"),
    )


class Member(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AttendanceRecord(Base):
    """A single check-in. At most one per (occurrence, dedup_key), enforced by the database.

    dedup_key is ``member:<id>`` for member check-ins, and ``phone:<normalized>`` or
    ``name:<normalized>`` for self-reported public check-ins.
    """

    __tablename__ = "attendance_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    occurrence_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("service_occurrences.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    member_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("members.id", ondelete="SET NULL"), nullable=True, index=True
    )
    guest_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(320), nullable=False)

    occurrence: Mapped[ServiceOccurrence] = relationship(ServiceOccurrence, lazy="joined")
    member: Mapped[Optional[Member]] = relationship(Member, lazy="joined")

    __table_args__ = (
        UniqueConstraint("occurrence_id", "dedup_key", name="uq_attendance_occurrence_identity"),
        CheckConstraint("method IN ('QR_ROTATING', 'QR_STATIC', 'MANUAL')", name="ck_attendance_method"),
        Index("ix_attendance_checked_in_at", "checked_in_at"),
    )


class SystemLog(Base):
    """Append-only audit log; attendance writes add one row in the same transaction."""

    __tablename__ = "system_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
