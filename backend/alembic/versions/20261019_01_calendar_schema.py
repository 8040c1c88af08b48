"""Calendar engine persistence schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_01_calendar_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "calendar_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("unit_id", sa.String(length=64), nullable=False),
        sa.Column("sequence_position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("planned_minutes", sa.Integer(), nullable=False),
        sa.Column("estimated_difficulty", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actual_minutes", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rescheduled_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_calendar_events_student_date", "calendar_events", ["student_id", "scheduled_at"])
    op.create_index("ix_calendar_events_student_course", "calendar_events", ["student_id", "course_id"])
    op.create_index("ix_calendar_events_unit", "calendar_events", ["unit_id"])

    op.create_table(
        "student_calendars",
        sa.Column("student_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "schedule_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("constraints", sa.JSON(), nullable=False),
        sa.Column("target_completion_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("student_id", "course_id", name="uq_schedule_preferences_course"),
    )
    op.create_index("ix_schedule_preferences_student_id", "schedule_preferences", ["student_id"])

    op.create_table(
        "learning_units",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("unit_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("sequence_position", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("difficulty_tier", sa.Integer(), nullable=False, server_default="3"),
        sa.UniqueConstraint("course_id", "unit_id", name="uq_learning_units_course_unit"),
    )
    op.create_index("ix_learning_units_course_position", "learning_units", ["course_id", "sequence_position"])

    op.create_table(
        "calendar_audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=64), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_calendar_audit_events_student_id", "calendar_audit_events", ["student_id"])


def downgrade() -> None:
    op.drop_index("ix_calendar_audit_events_student_id", table_name="calendar_audit_events")
    op.drop_table("calendar_audit_events")
    op.drop_index("ix_learning_units_course_position", table_name="learning_units")
    op.drop_table("learning_units")
    op.drop_index("ix_schedule_preferences_student_id", table_name="schedule_preferences")
    op.drop_table("schedule_preferences")
    op.drop_table("student_calendars")
    op.drop_index("ix_calendar_events_unit", table_name="calendar_events")
    op.drop_index("ix_calendar_events_student_course", table_name="calendar_events")
    op.drop_index("ix_calendar_events_student_date", table_name="calendar_events")
    op.drop_table("calendar_events")
