"""initial_schema

Revision ID: 3f1a9c2d7b10
Revises:
Create Date: 2026-10-12 09:14:03.118402

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create applications, payment ledger, queue and recovery tables."""
    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("applicant_data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        # Queue fields
        sa.Column("queue_status", sa.String(length=32), nullable=True),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("queue_entered_at", sa.DateTime(), nullable=True),
        sa.Column("queue_started_at", sa.DateTime(), nullable=True),
        sa.Column("queue_completed_at", sa.DateTime(), nullable=True),
        sa.Column("queue_duration", sa.Integer(), nullable=True),
        sa.Column("queue_job_id", sa.Integer(), nullable=True),
        sa.Column("queue_error", sa.String(length=1000), nullable=True),
        # Generation-failure diagnostics
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("error_category", sa.String(length=32), nullable=True),
        sa.Column("error_at", sa.DateTime(), nullable=True),
        sa.Column("screenshot_path", sa.String(length=500), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        # Payment linkage
        sa.Column("payment_order_id", sa.String(length=255), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(precision=10, scale=2), nullable=True),
        # Output artifacts
        sa.Column("permit_file_path", sa.String(length=500), nullable=True),
        sa.Column("receipt_file_path", sa.String(length=500), nullable=True),
        sa.Column("certificate_file_path", sa.String(length=500), nullable=True),
        sa.Column("plate_file_path", sa.String(length=500), nullable=True),
        sa.Column("folio", sa.String(length=100), nullable=True),
        sa.Column("issued_at", sa.DateTime(), nullable=True),
        sa.Column("permit_expires_at", sa.DateTime(), nullable=True),
        # Admin resolution
        sa.Column("resolution_notes", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        # Renewal lineage
        sa.Column("renewed_from_id", sa.Integer(), nullable=True),
        sa.Column("renewal_count", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["renewed_from_id"], ["applications.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_applications_user_id", "applications", ["user_id"])
    op.create_index("ix_applications_status", "applications", ["status"])
    op.create_index("ix_applications_updated_at", "applications", ["updated_at"])
    op.create_index("ix_applications_queue_status", "applications", ["queue_status"])
    op.create_index("ix_applications_payment_order_id", "applications", ["payment_order_id"])
    op.create_index("ix_applications_permit_expires_at", "applications", ["permit_expires_at"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("processor_event_id", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["application_id"], ["applications.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_events_application_id", "payment_events", ["application_id"])
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"])
    op.create_index("ix_payment_events_order_id", "payment_events", ["order_id"])

    op.create_table(
        "webhook_receipts",
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )

    op.create_table(
        "recovery_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_attempt_time", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("recovery_status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["application_id"], ["applications.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "application_id", "payment_intent_id", name="uq_recovery_app_intent"
        ),
    )
    op.create_index(
        "ix_recovery_attempts_application_id", "recovery_attempts", ["application_id"]
    )
    op.create_index(
        "ix_recovery_attempts_recovery_status", "recovery_attempts", ["recovery_status"]
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("leased_until", sa.DateTime(), nullable=True),
        sa.Column("worker_id", sa.String(length=100), nullable=True),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["application_id"], ["applications.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_application_id", "generation_jobs", ["application_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_available_at", "generation_jobs", ["available_at"])

    op.create_table(
        "system_state",
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("state_value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    """Drop all tables created by upgrade()."""
    op.drop_table("system_state")
    op.drop_index("ix_generation_jobs_available_at", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_application_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
    op.drop_index("ix_recovery_attempts_recovery_status", table_name="recovery_attempts")
    op.drop_index("ix_recovery_attempts_application_id", table_name="recovery_attempts")
    op.drop_table("recovery_attempts")
    op.drop_table("webhook_receipts")
    op.drop_index("ix_payment_events_order_id", table_name="payment_events")
    op.drop_index("ix_payment_events_event_type", table_name="payment_events")
    op.drop_index("ix_payment_events_application_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("ix_applications_permit_expires_at", table_name="applications")
    op.drop_index("ix_applications_payment_order_id", table_name="applications")
    op.drop_index("ix_applications_queue_status", table_name="applications")
    op.drop_index("ix_applications_updated_at", table_name="applications")
    op.drop_index("ix_applications_status", table_name="applications")
    op.drop_index("ix_applications_user_id", table_name="applications")
    op.drop_table("applications")
