"""Stripe subscription mirror and rollover checkpoints

rollover_checkpoints is claimed for every computed period, including
zero-credit ones, so redelivered events never recompute a rollover.

Revision ID: 002_mirror_checkpoints
Revises: 001_initial
Create Date: 2026-03-09
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002_mirror_checkpoints"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stripe_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.Integer, nullable=True),
        sa.Column("current_period_end", sa.Integer, nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_method_brand", sa.String(32), nullable=True),
        sa.Column("payment_method_last4", sa.String(4), nullable=True),
        sa.Column("status", sa.String(32), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_stripe_subscriptions_customer_id", "stripe_subscriptions", ["customer_id"], unique=True,
    )

    op.create_table(
        "rollover_checkpoints",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.Integer, nullable=False),
        sa.Column("from_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("previous_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_rolled_over", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "subscription_id", "from_period_start",
            name="uq_rollover_checkpoints_period",
        ),
    )


def downgrade() -> None:
    op.drop_table("rollover_checkpoints")
    op.drop_table("stripe_subscriptions")
