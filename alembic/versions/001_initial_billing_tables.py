"""Initial billing tables: customers, plans, snapshots, usage, rollovers

Revision ID: 001_initial
Revises:
Create Date: 2026-03-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stripe_customers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stripe_customers_customer_id", "stripe_customers", ["customer_id"], unique=True)
    op.create_index("ix_stripe_customers_user_id", "stripe_customers", ["user_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("stripe_price_id_monthly", sa.String(255), nullable=False),
        sa.Column("price_monthly", sa.Float, nullable=False, server_default="0"),
        sa.Column("limits", sa.JSON, nullable=False),
    )
    op.create_index(
        "ix_subscription_plans_stripe_price_id_monthly",
        "subscription_plans", ["stripe_price_id_monthly"], unique=True,
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("plan_id", sa.Integer, nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"], unique=True)
    op.create_index("ix_user_subscriptions_plan_id", "user_subscriptions", ["plan_id"])

    op.create_table(
        "usage_tracking",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.Integer, nullable=True),
        sa.Column("metric_name", sa.String(64), nullable=False),
        sa.Column("metric_value", sa.Integer, nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_usage_tracking_user_id", "usage_tracking", ["user_id"])
    op.create_index("ix_usage_tracking_subscription_id", "usage_tracking", ["subscription_id"])

    op.create_table(
        "token_rollovers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.Integer, nullable=False),
        sa.Column("tokens_rolled_over", sa.Integer, nullable=False),
        sa.Column("from_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "subscription_id", "from_period_start",
            name="uq_token_rollovers_period",
        ),
    )
    op.create_index("ix_token_rollovers_user_id", "token_rollovers", ["user_id"])
    op.create_index("ix_token_rollovers_subscription_id", "token_rollovers", ["subscription_id"])


def downgrade() -> None:
    op.drop_table("token_rollovers")
    op.drop_table("usage_tracking")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("stripe_customers")
