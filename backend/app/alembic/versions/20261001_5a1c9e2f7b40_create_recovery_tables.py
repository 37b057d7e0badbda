"""Create payment recovery tables.

Revision ID: 5a1c9e2f7b40
Revises:
Create Date: 2026-10-01
"""

import sqlalchemy as sa
from alembic import op

revision = "5a1c9e2f7b40"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("monthly_recurring_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_external_id", "customers", ["external_id"], unique=True)

    op.create_table(
        "payment_failures",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=True),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Numeric(12, 4), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("failure_reason", sa.String(length=255), nullable=False),
        sa.Column("failure_code", sa.String(length=100), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column(
            "classification", sa.String(length=50), nullable=False, server_default="temporary"
        ),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("resolution_type", sa.String(length=50), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_failures_customer_id", "payment_failures", ["customer_id"])
    op.create_index(
        "ix_payment_failures_subscription_id", "payment_failures", ["subscription_id"]
    )
    op.create_index("ix_payment_failures_status", "payment_failures", ["status"])
    op.create_index("ix_payment_failures_next_retry_at", "payment_failures", ["next_retry_at"])

    op.create_table(
        "processed_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("payment_failure_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["payment_failure_id"], ["payment_failures.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_processed_events_idempotency_key",
        "processed_events",
        ["idempotency_key"],
        unique=True,
    )
    op.create_index(
        "ix_processed_events_payment_failure_id", "processed_events", ["payment_failure_id"]
    )

    op.create_table(
        "dunning_campaigns",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("payment_failure_id", sa.String(length=36), nullable=False),
        sa.Column("campaign_type", sa.String(length=50), nullable=False),
        sa.Column("sequence_step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_steps", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column(
            "current_step_status", sa.String(length=20), nullable=False, server_default="pending"
        ),
        sa.Column("completion_reason", sa.String(length=50), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_communication_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_communication_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("communication_channels", sa.JSON(), nullable=False),
        sa.Column("ab_test_group", sa.String(length=50), nullable=False),
        sa.Column("personalization_data", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["payment_failure_id"], ["payment_failures.id"], ondelete="RESTRICT"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dunning_campaigns_customer_id", "dunning_campaigns", ["customer_id"])
    op.create_index(
        "ix_dunning_campaigns_payment_failure_id", "dunning_campaigns", ["payment_failure_id"]
    )
    op.create_index("ix_dunning_campaigns_status", "dunning_campaigns", ["status"])
    op.create_index(
        "ix_dunning_campaigns_next_communication_at",
        "dunning_campaigns",
        ["next_communication_at"],
    )

    op.create_table(
        "dunning_communications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("template_key", sa.String(length=100), nullable=False),
        sa.Column("sequence_step", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["dunning_campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dunning_communications_campaign_id", "dunning_communications", ["campaign_id"]
    )
    op.create_index(
        "ix_dunning_communications_customer_id", "dunning_communications", ["customer_id"]
    )

    op.create_table(
        "account_states",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("previous_state", sa.String(length=20), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reactivation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("feature_restrictions", sa.JSON(), nullable=False),
        sa.Column("manual_override", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("override_reason", sa.String(length=500), nullable=True),
        sa.Column("override_by", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "customer_id", "version", name="uq_account_states_customer_version"
        ),
    )
    op.create_index("ix_account_states_customer_id", "account_states", ["customer_id"])
    op.create_index("ix_account_states_updated_at", "account_states", ["updated_at"])

    op.create_table(
        "recovery_analytics",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("campaign_type", sa.String(length=50), nullable=False),
        sa.Column("customer_segment", sa.String(length=50), nullable=False),
        sa.Column("total_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_recovered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recovery_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "revenue_recovered_cents", sa.Numeric(14, 4), nullable=False, server_default="0"
        ),
        sa.Column("avg_recovery_time_hours", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_campaigns_started", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_campaigns_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_communications_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("email_open_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("email_click_rate", sa.Float(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "date",
            "campaign_type",
            "customer_segment",
            name="uq_recovery_analytics_date_type_segment",
        ),
    )
    op.create_index("ix_recovery_analytics_date", "recovery_analytics", ["date"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("resource_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_resource_type", "audit_logs", ["resource_type"])
    op.create_index("ix_audit_logs_resource_id", "audit_logs", ["resource_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("recovery_analytics")
    op.drop_table("account_states")
    op.drop_table("dunning_communications")
    op.drop_table("dunning_campaigns")
    op.drop_table("processed_events")
    op.drop_table("payment_failures")
    op.drop_table("customers")
