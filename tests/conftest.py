"""
Pytest configuration for Chatterwise billing tests.
Points the service at a throwaway SQLite database and log directory.
"""

import os
import tempfile

# Must be set before any chatterwise imports
_test_data_dir = tempfile.mkdtemp(prefix="chatterwise_test_")
os.environ.setdefault("CHATTERWISE_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("CHATTERWISE_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("CHATTERWISE_ISSUES_PATH", os.path.join(_test_data_dir, "logs", "issues.json"))
os.environ.setdefault("CHATTERWISE_STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

import hashlib
import hmac
import time
from datetime import datetime, timezone

import pytest
from sqlalchemy import delete
from sqlmodel import Session, SQLModel

from chatterwise.core.database import get_engine

# Import all models so their tables are registered on SQLModel.metadata
from chatterwise.models.billing import (
    BillingCustomer,
    RolloverCheckpoint,
    StripeSubscription,
    SubscriptionPlan,
    TokenRollover,
    UsageRecord,
    UserSubscription,
)

SQLModel.metadata.create_all(get_engine())

# Load error registry so severities and titles resolve in logs
from chatterwise.core.errors.registry import error_registry
error_registry.load()

from chatterwise.core.issue_tracker import issue_tracker
from chatterwise.services.webhook_metrics import webhook_metrics

WEBHOOK_SECRET = os.environ["CHATTERWISE_STRIPE_WEBHOOK_SECRET"]

_ALL_TABLES = (
    TokenRollover,
    RolloverCheckpoint,
    UsageRecord,
    StripeSubscription,
    UserSubscription,
    BillingCustomer,
    SubscriptionPlan,
)


def utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture(autouse=True)
def clean_state():
    """Every test starts with empty tables, counters and issues."""
    with Session(get_engine()) as session:
        for model in _ALL_TABLES:
            session.exec(delete(model))
        session.commit()
    webhook_metrics.reset()
    issue_tracker.clear()
    yield


@pytest.fixture
def db_session():
    with Session(get_engine()) as session:
        yield session


@pytest.fixture
def plans(db_session):
    """Two plans: pro (100k tokens) and starter (20k tokens)."""
    pro = SubscriptionPlan(
        name="Pro",
        stripe_price_id_monthly="price_pro",
        price_monthly=29.0,
        limits={"tokens_per_month": 100_000},
    )
    starter = SubscriptionPlan(
        name="Starter",
        stripe_price_id_monthly="price_starter",
        price_monthly=9.0,
        limits={"tokens_per_month": 20_000},
    )
    db_session.add(pro)
    db_session.add(starter)
    db_session.commit()
    db_session.refresh(pro)
    db_session.refresh(starter)
    return {"pro": pro, "starter": starter}


@pytest.fixture
def subscription_event():
    """Factory for ``customer.subscription.*`` event envelopes."""

    def _make(
        event_type: str = "customer.subscription.updated",
        customer: str = "cus_123",
        price: str = "price_pro",
        period_start: datetime = utc(2025, 2, 1),
        period_end: datetime = utc(2025, 3, 1),
        user_id: str | None = "user-1",
        event_id: str = "evt_1",
        status: str = "active",
    ) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "livemode": False,
            "data": {
                "object": {
                    "id": "sub_1",
                    "object": "subscription",
                    "customer": customer,
                    "status": status,
                    "cancel_at_period_end": False,
                    "metadata": {"user_id": user_id} if user_id else {},
                    "items": {
                        "data": [{
                            "price": {"id": price},
                            "current_period_start": int(period_start.timestamp()),
                            "current_period_end": int(period_end.timestamp()),
                        }]
                    },
                }
            },
        }

    return _make
