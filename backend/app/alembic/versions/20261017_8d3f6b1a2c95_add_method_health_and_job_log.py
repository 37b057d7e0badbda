"""Add payment method health and job execution log.

Revision ID: 8d3f6b1a2c95
Revises: 5a1c9e2f7b40
Create Date: 2026-10-17
"""

import sqlalchemy as sa
from alembic import op

revision = "8d3f6b1a2c95"
down_revision = "5a1c9e2f7b40"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_method_health",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_successful_payment", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failed_payment", sa.DateTime(timezone=True), nullable=True),
        sa.Column("common_failure_reasons", sa.JSON(), nullable=False),
        sa.Column("health_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column(
            "recommendation", sa.String(length=50), nullable=False, server_default="healthy"
        ),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "customer_id", "payment_method_id", name="uq_payment_method_health_customer_method"
        ),
    )
    op.create_index(
        "ix_payment_method_health_customer_id", "payment_method_health", ["customer_id"]
    )
    op.create_index(
        "ix_payment_method_health_blocked_until", "payment_method_health", ["blocked_until"]
    )

    op.create_table(
        "job_executions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("job_type", sa.String(length=50), nullable=False),
        sa.Column("trigger", sa.String(length=20), nullable=False, server_default="cron"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_executions_job_type", "job_executions", ["job_type"])
    op.create_index("ix_job_executions_started_at", "job_executions", ["started_at"])


def downgrade() -> None:
    op.drop_table("job_executions")
    op.drop_table("payment_method_health")
