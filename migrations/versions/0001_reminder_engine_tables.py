"""reminder engine tables

Revision ID: 0001_reminder_engine
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_reminder_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "patients",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("verification_status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_patients_id"), "patients", ["id"], unique=True)
    op.create_index(op.f("ix_patients_name"), "patients", ["name"], unique=False)
    op.create_index(op.f("ix_patients_phone_number"), "patients", ["phone_number"], unique=False)
    op.create_index(op.f("ix_patients_is_active"), "patients", ["is_active"], unique=False)
    op.create_index(
        op.f("ix_patients_verification_status"), "patients", ["verification_status"], unique=False
    )

    op.create_table(
        "reminders",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("start_date", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("scheduled_time", sa.String(length=5), nullable=False, comment="Time of day, HH:MM"),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("reminder_type", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("message_id", sa.String(length=255), nullable=True, comment="Transport message id"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "scheduled_time LIKE '__:__'", name="ck_reminders_scheduled_time_hhmm"
        ),
    )
    op.create_index(op.f("ix_reminders_id"), "reminders", ["id"], unique=True)
    op.create_index(op.f("ix_reminders_patient_id"), "reminders", ["patient_id"], unique=False)
    op.create_index(op.f("ix_reminders_start_date"), "reminders", ["start_date"], unique=False)
    op.create_index(op.f("ix_reminders_is_active"), "reminders", ["is_active"], unique=False)
    op.create_index(op.f("ix_reminders_status"), "reminders", ["status"], unique=False)
    op.create_index(op.f("ix_reminders_sent_at"), "reminders", ["sent_at"], unique=False)
    op.create_index(
        "idx_reminders_due",
        "reminders",
        ["is_active", "status", "start_date", "scheduled_time"],
        unique=False,
    )

    op.create_table(
        "reminder_followups",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reminder_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("followup_type", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["reminder_id"], ["reminders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reminder_followups_id"), "reminder_followups", ["id"], unique=True)
    op.create_index(
        op.f("ix_reminder_followups_reminder_id"), "reminder_followups", ["reminder_id"], unique=False
    )
    op.create_index(
        op.f("ix_reminder_followups_patient_id"), "reminder_followups", ["patient_id"], unique=False
    )
    op.create_index(op.f("ix_reminder_followups_status"), "reminder_followups", ["status"], unique=False)
    op.create_index(
        op.f("ix_reminder_followups_scheduled_at"), "reminder_followups", ["scheduled_at"], unique=False
    )
    op.create_index(
        "idx_followups_pending_scheduled",
        "reminder_followups",
        ["status", "scheduled_at"],
        unique=False,
    )

    op.create_table(
        "distributed_locks",
        sa.Column("lock_key", sa.String(length=255), nullable=False),
        sa.Column("owner_token", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_key"),
    )
    op.create_index(
        op.f("ix_distributed_locks_expires_at"), "distributed_locks", ["expires_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_distributed_locks_expires_at"), table_name="distributed_locks")
    op.drop_table("distributed_locks")

    op.drop_index("idx_followups_pending_scheduled", table_name="reminder_followups")
    op.drop_index(op.f("ix_reminder_followups_scheduled_at"), table_name="reminder_followups")
    op.drop_index(op.f("ix_reminder_followups_status"), table_name="reminder_followups")
    op.drop_index(op.f("ix_reminder_followups_patient_id"), table_name="reminder_followups")
    op.drop_index(op.f("ix_reminder_followups_reminder_id"), table_name="reminder_followups")
    op.drop_index(op.f("ix_reminder_followups_id"), table_name="reminder_followups")
    op.drop_table("reminder_followups")

    op.drop_index("idx_reminders_due", table_name="reminders")
    op.drop_index(op.f("ix_reminders_sent_at"), table_name="reminders")
    op.drop_index(op.f("ix_reminders_status"), table_name="reminders")
    op.drop_index(op.f("ix_reminders_is_active"), table_name="reminders")
    op.drop_index(op.f("ix_reminders_start_date"), table_name="reminders")
    op.drop_index(op.f("ix_reminders_patient_id"), table_name="reminders")
    op.drop_index(op.f("ix_reminders_id"), table_name="reminders")
    op.drop_table("reminders")

    op.drop_index(op.f("ix_patients_verification_status"), table_name="patients")
    op.drop_index(op.f("ix_patients_is_active"), table_name="patients")
    op.drop_index(op.f("ix_patients_phone_number"), table_name="patients")
    op.drop_index(op.f("ix_patients_name"), table_name="patients")
    op.drop_index(op.f("ix_patients_id"), table_name="patients")
    op.drop_table("patients")
