"""ORM models backing the StudyFlow persistence layer."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, utcnow

JSONType = JSON


def _uuid() -> str:
    return str(uuid.uuid4())


class TemplateBlockModel(TimestampMixin, Base):
    __tablename__ = "template_blocks"
    __table_args__ = (
        UniqueConstraint("student_id", "weekday", "block_number", name="uq_template_blocks_slot"),
        Index("ix_template_blocks_student_weekday", "student_id", "weekday"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    weekday: Mapped[str] = mapped_column(String(9), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    subject: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    block_type: Mapped[str] = mapped_column(String(32), nullable=False)


class AssignmentModel(TimestampMixin, Base):
    __tablename__ = "assignments"
    __table_args__ = (
        Index(
            "uq_assignments_imported_title",
            "student_id",
            "normalized_title",
            unique=True,
            sqlite_where=text("provenance = 'imported'"),
            postgresql_where=text("provenance = 'imported'"),
        ),
        UniqueConstraint(
            "student_id",
            "scheduled_date",
            "scheduled_block_number",
            name="uq_assignments_placement",
        ),
        Index("ix_assignments_student_status", "student_id", "completion_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_title: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    course_name: Mapped[Optional[str]] = mapped_column(String(255))
    instructions: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    estimated_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    priority: Mapped[str] = mapped_column(String(1), default="B", nullable=False)
    completion_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    scheduled_block_number: Mapped[Optional[int]] = mapped_column(Integer)
    provenance: Mapped[str] = mapped_column(String(16), default="local", nullable=False)
    source_key: Mapped[Optional[str]] = mapped_column(String(128))
    source_course_id: Mapped[Optional[str]] = mapped_column(String(128))
    time_spent_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class BlockStatusModel(Base):
    __tablename__ = "block_statuses"
    __table_args__ = (
        UniqueConstraint("student_id", "date", "template_block_id", name="uq_block_statuses_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    day: Mapped[date] = mapped_column("date", Date, nullable=False)
    template_block_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("template_blocks.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class PendingStuckMarkModel(Base):
    __tablename__ = "pending_stuck_marks"
    __table_args__ = (
        Index(
            "uq_pending_stuck_marks_active",
            "assignment_id",
            unique=True,
            sqlite_where=text("state = 'pending'"),
            postgresql_where=text("state = 'pending'"),
        ),
        Index("ix_pending_stuck_marks_state_commit", "state", "commit_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    assignment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    day: Mapped[date] = mapped_column("date", Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(Integer)
    notify_parent: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    commit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class BibleReadingModel(Base):
    __tablename__ = "bible_readings"
    __table_args__ = (
        UniqueConstraint("week_number", "day_of_week", "reading_type", name="uq_bible_readings_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    reading_type: Mapped[str] = mapped_column(String(32), default="daily_reading", nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)


class BiblePositionModel(Base):
    __tablename__ = "bible_positions"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    current_week: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_advanced_on: Mapped[Optional[date]] = mapped_column(Date)
    last_completed_reading_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("bible_readings.id", ondelete="SET NULL")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class StudentPreferenceModel(TimestampMixin, Base):
    __tablename__ = "student_preferences"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    allow_saturday: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class PointsLedgerEntryModel(Base):
    __tablename__ = "points_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AuditEventModel(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_student_created", "student_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[Optional[str]] = mapped_column(String(128))
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


__all__ = [
    "AssignmentModel",
    "AuditEventModel",
    "BiblePositionModel",
    "BibleReadingModel",
    "BlockStatusModel",
    "PendingStuckMarkModel",
    "PointsLedgerEntryModel",
    "StudentPreferenceModel",
    "TemplateBlockModel",
]
