"""create subscription lifecycle tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_LIVE_PREDICATE = "status IN ('trial', 'active', 'paused')"


def upgrade() -> None:
    op.create_table(
        "plan",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("quota", sa.Integer(), nullable=True),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_plan_name"),
        sa.CheckConstraint("price >= 0", name="ck_plan_price_nonnegative"),
        sa.CheckConstraint("trial_days >= 0", name="ck_plan_trial_days_nonnegative"),
        sa.CheckConstraint("quota IS NULL OR quota >= 0", name="ck_plan_quota_nonnegative"),
        sa.CheckConstraint(
            "billing_cycle IN ('weekly', 'monthly', 'quarterly', 'yearly')",
            name="ck_plan_billing_cycle",
        ),
    )
    op.create_index("ix_plan_active_price", "plan", ["is_active", "price"], unique=False)

    op.create_table(
        "subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_duration_days", sa.Integer(), nullable=True),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("price_snapshot", sa.Numeric(10, 2), nullable=False),
        sa.Column("quota_snapshot", sa.Integer(), nullable=True),
        sa.Column("pending_plan_id", sa.Uuid(), nullable=True),
        sa.Column("pending_change_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["plan.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["pending_plan_id"], ["plan.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('trial', 'active', 'paused', 'cancelled', 'expired')",
            name="ck_subscription_status",
        ),
        sa.CheckConstraint("current_period_end >= current_period_start", name="ck_subscription_period_order"),
        sa.CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="ck_subscription_discount_range",
        ),
        sa.CheckConstraint("(status = 'cancelled') = (cancelled_at IS NOT NULL)", name="ck_subscription_cancelled_at"),
        sa.CheckConstraint("(status = 'paused') = (paused_at IS NOT NULL)", name="ck_subscription_paused_at"),
    )
    op.create_index(
        "uq_subscription_live_user_plan",
        "subscription",
        ["user_id", "plan_id"],
        unique=True,
        postgresql_where=sa.text(_LIVE_PREDICATE),
        sqlite_where=sa.text(_LIVE_PREDICATE),
    )
    op.create_index("ix_subscription_user", "subscription", ["user_id", "created_at"], unique=False)
    op.create_index(
        "ix_subscription_status_period_end",
        "subscription",
        ["status", "current_period_end"],
        unique=False,
    )

    op.create_table(
        "subscription_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_log_subscription",
        "subscription_log",
        ["subscription_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "billing_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="charge"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number", name="uq_billing_record_invoice_number"),
        sa.UniqueConstraint("subscription_id", "kind", "billing_date", name="uq_billing_record_period"),
        sa.CheckConstraint("amount >= 0", name="ck_billing_record_amount_nonnegative"),
        sa.CheckConstraint("kind IN ('charge', 'proration', 'refund')", name="ck_billing_record_kind"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_billing_record_status",
        ),
    )
    op.create_index("ix_billing_record_user_date", "billing_record", ["user_id", "billing_date"], unique=False)

    op.create_table(
        "usage_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("metric", sa.String(length=64), nullable=False, server_default="requests"),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount >= 0", name="ck_usage_record_amount_nonnegative"),
    )
    op.create_index(
        "ix_usage_record_subscription_time",
        "usage_record",
        ["subscription_id", "recorded_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_usage_record_subscription_time", table_name="usage_record")
    op.drop_table("usage_record")
    op.drop_index("ix_billing_record_user_date", table_name="billing_record")
    op.drop_table("billing_record")
    op.drop_index("ix_subscription_log_subscription", table_name="subscription_log")
    op.drop_table("subscription_log")
    op.drop_index("ix_subscription_status_period_end", table_name="subscription")
    op.drop_index("ix_subscription_user", table_name="subscription")
    op.drop_index("uq_subscription_live_user_plan", table_name="subscription")
    op.drop_table("subscription")
    op.drop_index("ix_plan_active_price", table_name="plan")
    op.drop_table("plan")
