"""Track timed study sessions against calendar events.

Revision ID: 20261019_02_study_sessions
Revises: 20261019_01_calendar_schema
Create Date: 2026-10-19 15:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "20261019_02_study_sessions"
down_revision = "20261019_01_calendar_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "study_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_study_sessions_student_started", "study_sessions", ["student_id", "started_at"])
    op.create_index("ix_study_sessions_event", "study_sessions", ["event_id"])


def downgrade() -> None:
    op.drop_index("ix_study_sessions_event", table_name="study_sessions")
    op.drop_index("ix_study_sessions_student_started", table_name="study_sessions")
    op.drop_table("study_sessions")
