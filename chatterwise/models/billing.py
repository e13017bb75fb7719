"""
Billing Models
==============

SQLModel tables for subscription reconciliation state:
- BillingCustomer: Stripe customer → user mapping.
- SubscriptionPlan: Plan catalog (read-only for the webhook).
- UserSubscription: Current subscription snapshot, one row per user.
- StripeSubscription: Raw Stripe subscription mirror, one row per customer.
- UsageRecord: Metered usage per period (written by the chat service).
- RolloverCheckpoint: One row per attempted rollover computation.
- TokenRollover: Append-only rollover credit ledger.

Table and column names match the Supabase schema the dashboard reads.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tz_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class BillingCustomer(SQLModel, table=True):
    """Stripe customer id → internal user id. First write wins."""

    __tablename__ = "stripe_customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: str = Field(unique=True, index=True, max_length=255)
    user_id: str = Field(index=True, max_length=128)
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_tz_column())


class SubscriptionPlan(SQLModel, table=True):
    """Plan catalog entry keyed by its monthly Stripe price."""

    __tablename__ = "subscription_plans"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=128)
    stripe_price_id_monthly: str = Field(unique=True, index=True, max_length=255)
    price_monthly: float = Field(default=0)
    limits: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    @property
    def token_limit(self) -> int:
        """Monthly chat token allowance; plans without one allow nothing."""
        return int((self.limits or {}).get("tokens_per_month") or 0)


class UserSubscription(SQLModel, table=True):
    """Provider's current-truth subscription snapshot for a user."""

    __tablename__ = "user_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=128)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255)
    plan_id: int = Field(index=True)
    status: str = Field(max_length=32)
    current_period_start: datetime = Field(sa_column=_tz_column())
    current_period_end: datetime = Field(sa_column=_tz_column())
    cancel_at_period_end: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_tz_column())


class StripeSubscription(SQLModel, table=True):
    """Raw mirror of the Stripe subscription object, keyed by customer."""

    __tablename__ = "stripe_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: str = Field(unique=True, index=True, max_length=255)
    subscription_id: Optional[str] = Field(default=None, max_length=255)
    price_id: Optional[str] = Field(default=None, max_length=255)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = Field(default=False)
    payment_method_brand: Optional[str] = Field(default=None, max_length=32)
    payment_method_last4: Optional[str] = Field(default=None, max_length=4)
    status: Optional[str] = Field(default=None, max_length=32)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_tz_column())


class UsageRecord(SQLModel, table=True):
    """Usage consumed in a period. Written by the chat service."""

    __tablename__ = "usage_tracking"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    subscription_id: Optional[int] = Field(default=None, index=True)
    metric_name: str = Field(max_length=64)
    metric_value: int = Field(default=0)
    period_start: datetime = Field(sa_column=_tz_column())
    period_end: datetime = Field(sa_column=_tz_column())


class RolloverCheckpoint(SQLModel, table=True):
    """Claimed once per (user, subscription, period) rollover attempt.

    Written even when the computed rollover is zero, so a zero-credit period
    is never recomputed on redelivery.
    """

    __tablename__ = "rollover_checkpoints"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "subscription_id", "from_period_start",
            name="uq_rollover_checkpoints_period",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=128)
    subscription_id: int
    from_period_start: datetime = Field(sa_column=_tz_column())
    tokens_used: int = Field(default=0)
    previous_limit: int = Field(default=0)
    tokens_rolled_over: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_tz_column())


class TokenRollover(SQLModel, table=True):
    """Append-only rollover credit. Never updated or deleted here."""

    __tablename__ = "token_rollovers"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "subscription_id", "from_period_start",
            name="uq_token_rollovers_period",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    subscription_id: int = Field(index=True)
    tokens_rolled_over: int
    from_period_start: datetime = Field(sa_column=_tz_column())
    from_period_end: datetime = Field(sa_column=_tz_column())
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_tz_column())
