"""initial ledger schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("store_id", sa.String(), nullable=False),
        sa.Column("trial_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coupon_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trial_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("monthly_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_credit_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overage_mode", sa.String(), nullable=True),
        sa.Column("overage_balance_used_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_capped_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_rate_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_units_this_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_unbilled_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_unbilled_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_overage_billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_handle", sa.String(), nullable=True),
        sa.Column("included_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_interval", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("usage_line_item_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("store_id"),
    )
    op.create_index("ix_credit_accounts_subscription_status", "credit_accounts", ["subscription_status"], unique=False)
    op.create_index("ix_credit_accounts_subscription_id", "credit_accounts", ["subscription_id"], unique=False)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pool_deltas", sa.JSON(), nullable=True),
        sa.Column("overage_delta_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_mode", sa.String(), nullable=True),
        sa.Column("overage_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("billing_provider", sa.String(), nullable=True),
        sa.Column("billing_reference", sa.String(), nullable=True),
        sa.Column("period_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["store_id"], ["credit_accounts.store_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_ledger_store_id", "credit_ledger", ["store_id"], unique=False)
    op.create_index("ix_credit_ledger_entry_type", "credit_ledger", ["entry_type"], unique=False)
    op.create_index("ix_credit_ledger_reference_id", "credit_ledger", ["reference_id"], unique=False)
    op.create_index("ix_credit_ledger_billing_reference", "credit_ledger", ["billing_reference"], unique=False)
    op.create_index("ix_credit_ledger_period_key", "credit_ledger", ["period_key"], unique=False)
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"], unique=False)

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("dedup_key", sa.String(), nullable=False),
        sa.Column("capped_amount_cents", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_subscription_events_store_id", "subscription_events", ["store_id"], unique=False)
    op.create_index("ix_subscription_events_subscription_id", "subscription_events", ["subscription_id"], unique=False)
    op.create_index("ix_subscription_events_received_at", "subscription_events", ["received_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_subscription_events_received_at", table_name="subscription_events")
    op.drop_index("ix_subscription_events_subscription_id", table_name="subscription_events")
    op.drop_index("ix_subscription_events_store_id", table_name="subscription_events")
    op.drop_table("subscription_events")

    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_period_key", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_billing_reference", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_reference_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_entry_type", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_store_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_index("ix_credit_accounts_subscription_id", table_name="credit_accounts")
    op.drop_index("ix_credit_accounts_subscription_status", table_name="credit_accounts")
    op.drop_table("credit_accounts")
