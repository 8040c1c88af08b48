"""ORM models backing the calendar engine persistence layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, UTCDateTime

JSONType = JSON


class CalendarEventModel(TimestampMixin, Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("ix_calendar_events_student_date", "student_id", "scheduled_at"),
        Index("ix_calendar_events_student_course", "student_id", "course_id"),
        Index("ix_calendar_events_unit", "unit_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    unit_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    planned_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_difficulty: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    actual_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    rescheduled_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StudentCalendarModel(Base):
    """Per-student version row guarding concurrent writers."""

    __tablename__ = "student_calendars"

    student_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(timezone.utc)
    )


class SchedulePreferenceModel(TimestampMixin, Base):
    __tablename__ = "schedule_preferences"
    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_schedule_preferences_course"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    constraints: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    target_completion_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class LearningUnitModel(Base):
    __tablename__ = "learning_units"
    __table_args__ = (
        UniqueConstraint("course_id", "unit_id", name="uq_learning_units_course_unit"),
        Index("ix_learning_units_course_position", "course_id", "sequence_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    unit_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sequence_position: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    difficulty_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=3)


class StudySessionModel(Base):
    """Measured study time; ``event_id`` is cleared when its event is deleted."""

    __tablename__ = "study_sessions"
    __table_args__ = (
        Index("ix_study_sessions_student_started", "student_id", "started_at"),
        Index("ix_study_sessions_event", "event_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )


class CalendarAuditEventModel(Base):
    __tablename__ = "calendar_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )


__all__ = [
    "CalendarAuditEventModel",
    "CalendarEventModel",
    "LearningUnitModel",
    "SchedulePreferenceModel",
    "StudentCalendarModel",
    "StudySessionModel",
]
