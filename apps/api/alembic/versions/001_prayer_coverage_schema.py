"""prayer_coverage_schema

Revision ID: 001_prayer_coverage
Revises:
Create Date: 2026-10-19

Adds:
- intercessor
- prayer_slot (one row per daily window, optimistic version column)
- attendance_record (append-only, unique per slot and date)
- skip_request
- slot_notification (reminder / fallback outbox, unique per occurrence)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_prayer_coverage"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "intercessor",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="intercessor"),
        sa.Column("timezone", sa.Text(), nullable=True),
        sa.Column("reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_offsets", sa.Text(), nullable=True),
    )

    op.create_table(
        "prayer_slot",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("slot_time", sa.Text(), nullable=False, unique=True),
        sa.Column("window_start", sa.Time(), nullable=False),
        sa.Column("window_end", sa.Time(), nullable=False),
        sa.Column("timezone", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("intercessor.id"), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="unassigned"),
        sa.Column("missed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skip_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skip_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('unassigned', 'active', 'missed', 'skipped', 'released')",
            name="ck_prayer_slot_status",
        ),
        sa.CheckConstraint("missed_count >= 0", name="ck_prayer_slot_missed_count"),
    )
    op.create_index("ix_prayer_slot_user_id", "prayer_slot", ["user_id"])
    op.create_index("ix_prayer_slot_status", "prayer_slot", ["status"])

    op.create_table(
        "attendance_record",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("slot_id", sa.Integer(), sa.ForeignKey("prayer_slot.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("intercessor.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("attended", sa.Boolean(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.Text(), nullable=False, server_default="manual"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_attendance_record_slot_id", "attendance_record", ["slot_id"])
    op.create_index("ix_attendance_record_user_id", "attendance_record", ["user_id"])
    op.create_index("uq_attendance_slot_date", "attendance_record", ["slot_id", "date"], unique=True)
    op.create_index("ix_attendance_user_date", "attendance_record", ["user_id", "date"])

    op.create_table(
        "skip_request",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("intercessor.id"), nullable=False),
        sa.Column("slot_id", sa.Integer(), sa.ForeignKey("prayer_slot.id"), nullable=False),
        sa.Column("skip_days", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("admin_comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("skip_days > 0", name="ck_skip_request_days"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_skip_request_status",
        ),
    )
    op.create_index("ix_skip_request_user_id", "skip_request", ["user_id"])

    op.create_table(
        "slot_notification",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("slot_id", sa.Integer(), sa.ForeignKey("prayer_slot.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("intercessor.id"), nullable=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("offset_minutes", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("occurrence_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_slot_notification_slot_id", "slot_notification", ["slot_id"])
    op.create_index(
        "uq_slot_notification_occurrence",
        "slot_notification",
        ["slot_id", "kind", "occurrence_start", "offset_minutes"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table("slot_notification")
    op.drop_table("skip_request")
    op.drop_table("attendance_record")
    op.drop_table("prayer_slot")
    op.drop_table("intercessor")
