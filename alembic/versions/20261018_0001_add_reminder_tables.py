"""add medication reminder tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "medications",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("dosage", sa.String(length=128), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("continuous", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("treatment_duration_days", sa.Integer(), nullable=True),
        sa.Column("clock_times", sa.JSON(), nullable=False),
        sa.Column("course_started_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medications_user_id", "medications", ["user_id"], unique=False)

    op.create_table(
        "adherence_records",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("medication_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("taken_at", sa.DateTime(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_adherence_records_user_id_taken_at",
        "adherence_records",
        ["user_id", "taken_at"],
        unique=False,
    )
    op.create_index("ix_adherence_records_medication_id", "adherence_records", ["medication_id"], unique=False)

    op.create_table(
        "scheduled_alerts",
        sa.Column("handle", sa.String(length=64), nullable=False),
        sa.Column("medication_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("clock_time", sa.String(length=8), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("fire_at", sa.DateTime(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("handle"),
    )
    op.create_index("ix_scheduled_alerts_medication_id", "scheduled_alerts", ["medication_id"], unique=False)
    op.create_index("ix_scheduled_alerts_fire_at", "scheduled_alerts", ["fire_at"], unique=False)

    op.create_table(
        "delivered_alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("handle", sa.String(length=64), nullable=False),
        sa.Column("medication_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("fired_for", sa.DateTime(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_delivered_alerts_handle", "delivered_alerts", ["handle"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_delivered_alerts_handle", table_name="delivered_alerts")
    op.drop_table("delivered_alerts")

    op.drop_index("ix_scheduled_alerts_fire_at", table_name="scheduled_alerts")
    op.drop_index("ix_scheduled_alerts_medication_id", table_name="scheduled_alerts")
    op.drop_table("scheduled_alerts")

    op.drop_index("ix_adherence_records_medication_id", table_name="adherence_records")
    op.drop_index("ix_adherence_records_user_id_taken_at", table_name="adherence_records")
    op.drop_table("adherence_records")

    op.drop_index("ix_medications_user_id", table_name="medications")
    op.drop_table("medications")
