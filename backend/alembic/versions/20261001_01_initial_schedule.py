"""Initial schedule, completion and sync schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261001_01_initial_schedule"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "template_blocks",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("weekday", sa.String(length=9), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("block_type", sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("student_id", "weekday", "block_number", name="uq_template_blocks_slot"),
    )
    op.create_index("ix_template_blocks_student_weekday", "template_blocks", ["student_id", "weekday"])

    op.create_table(
        "assignments",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("normalized_title", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("course_name", sa.String(length=255), nullable=True),
        sa.Column("instructions", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("priority", sa.String(length=1), nullable=False, server_default="B"),
        sa.Column("completion_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("scheduled_block_number", sa.Integer(), nullable=True),
        sa.Column("provenance", sa.String(length=16), nullable=False, server_default="local"),
        sa.Column("source_key", sa.String(length=128), nullable=True),
        sa.Column("source_course_id", sa.String(length=128), nullable=True),
        sa.Column("time_spent_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "student_id", "scheduled_date", "scheduled_block_number", name="uq_assignments_placement"
        ),
    )
    op.create_index(
        "uq_assignments_imported_title",
        "assignments",
        ["student_id", "normalized_title"],
        unique=True,
        sqlite_where=sa.text("provenance = 'imported'"),
        postgresql_where=sa.text("provenance = 'imported'"),
    )
    op.create_index("ix_assignments_student_status", "assignments", ["student_id", "completion_status"])

    op.create_table(
        "block_statuses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "template_block_id",
            sa.String(length=36),
            sa.ForeignKey("template_blocks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("student_id", "date", "template_block_id", name="uq_block_statuses_slot"),
    )

    op.create_table(
        "pending_stuck_marks",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "assignment_id",
            sa.String(length=36),
            sa.ForeignKey("assignments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("block_number", sa.Integer(), nullable=True),
        sa.Column("notify_parent", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("commit_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_pending_stuck_marks_active",
        "pending_stuck_marks",
        ["assignment_id"],
        unique=True,
        sqlite_where=sa.text("state = 'pending'"),
        postgresql_where=sa.text("state = 'pending'"),
    )
    op.create_index("ix_pending_stuck_marks_state_commit", "pending_stuck_marks", ["state", "commit_at"])

    op.create_table(
        "bible_readings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("week_number", sa.Integer(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("reading_type", sa.String(length=32), nullable=False, server_default="daily_reading"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.UniqueConstraint("week_number", "day_of_week", "reading_type", name="uq_bible_readings_slot"),
    )

    op.create_table(
        "bible_positions",
        sa.Column("student_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("current_week", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_advanced_on", sa.Date(), nullable=True),
        sa.Column(
            "last_completed_reading_id",
            sa.Integer(),
            sa.ForeignKey("bible_readings.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "student_preferences",
        sa.Column("student_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("allow_saturday", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "points_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_points_ledger_student_id", "points_ledger", ["student_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_audit_events_student_created", "audit_events", ["student_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_student_created", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_points_ledger_student_id", table_name="points_ledger")
    op.drop_table("points_ledger")
    op.drop_table("student_preferences")
    op.drop_table("bible_positions")
    op.drop_table("bible_readings")
    op.drop_index("ix_pending_stuck_marks_state_commit", table_name="pending_stuck_marks")
    op.drop_index("uq_pending_stuck_marks_active", table_name="pending_stuck_marks")
    op.drop_table("pending_stuck_marks")
    op.drop_table("block_statuses")
    op.drop_index("ix_assignments_student_status", table_name="assignments")
    op.drop_index("uq_assignments_imported_title", table_name="assignments")
    op.drop_table("assignments")
    op.drop_index("ix_template_blocks_student_weekday", table_name="template_blocks")
    op.drop_table("template_blocks")
