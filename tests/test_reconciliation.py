"""
Tests for SubscriptionReconciler — the verify → identify → plan → write pipeline.

Covers:
- 100k plan / 30k used → 70,000 rolled over exactly once across redeliveries
- Cold start: no prior snapshot → current plan limit
- Absent usage → full previous plan limit (plan change uses the previous plan)
- No compounding of earlier rollover credits
- Period chain Jan → Feb → Mar computes each transition once
- Skipped periods: only the last snapshot's own period is counted
- Idempotent customer mapping across N deliveries
- Terminal no-ops: ignored type, incomplete payload, unresolved customer, unknown price
- Storage failures (snapshot, rollover, mirror, mapping) are recorded, never raised
- Invalid signature raises before anything is written
- Read failures end the run as READ_FAILED (CWB-DB-005), never raised
"""

import json
from unittest.mock import patch

import pytest
from sqlmodel import create_engine, select

from chatterwise.core.errors import InvalidSignature, StorageReadFailure, StorageWriteFailure
from chatterwise.core.issue_tracker import IssueTracker
from chatterwise.core.structured_logging import stripe_event_id_var
from chatterwise.models.billing import (
    BillingCustomer,
    RolloverCheckpoint,
    StripeSubscription,
    TokenRollover,
    UsageRecord,
    UserSubscription,
)
from chatterwise.models.webhook import StripeEvent
from chatterwise.services.billing_store import SqlBillingStore
from chatterwise.services.reconciliation import Outcome, SubscriptionReconciler
from chatterwise.services.stripe_verifier import StripeEventVerifier
from chatterwise.services.webhook_metrics import WebhookMetrics

from conftest import WEBHOOK_SECRET, sign_payload, utc


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def metrics():
    return WebhookMetrics()


@pytest.fixture
def issues(tmp_path):
    return IssueTracker(persist_path=str(tmp_path / "issues.json"))


@pytest.fixture
def reconciler(metrics, issues):
    return SubscriptionReconciler(
        verifier=StripeEventVerifier(secret=WEBHOOK_SECRET, allow_unsigned=False),
        store=SqlBillingStore(),
        metrics=metrics,
        issues=issues,
    )


def _event(raw: dict) -> StripeEvent:
    return StripeEvent.model_validate(raw)


def _seed_previous(db_session, plan, start=utc(2025, 1, 1), end=utc(2025, 2, 1), user_id="user-1"):
    """Snapshot for the period that is about to end."""
    row = UserSubscription(
        user_id=user_id,
        stripe_subscription_id="sub_1",
        plan_id=plan.id,
        status="active",
        current_period_start=start,
        current_period_end=end,
    )
    db_session.add(BillingCustomer(customer_id="cus_123", user_id=user_id))
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


def _usage(db_session, subscription_id, value, start=utc(2025, 1, 1), end=utc(2025, 2, 1), user_id="user-1"):
    db_session.add(UsageRecord(
        user_id=user_id,
        subscription_id=subscription_id,
        metric_name="chat_tokens_per_month",
        metric_value=value,
        period_start=start,
        period_end=end,
    ))
    db_session.commit()


def _rows(db_session, model):
    return db_session.exec(select(model)).all()


def _issue_codes(issues):
    return {issue["code"] for issue in issues.get_active_issues()}


# ---------------------------------------------------------------------------
# Rollover scenarios
# ---------------------------------------------------------------------------

class TestRolloverScenarios:

    def test_unused_balance_rolls_over_once(self, reconciler, plans, db_session, subscription_event, metrics):
        previous = _seed_previous(db_session, plans["pro"])
        _usage(db_session, previous.id, 30_000)

        first = reconciler.reconcile(_event(subscription_event()))
        second = reconciler.reconcile(_event(subscription_event(event_id="evt_1_retry")))

        assert first.outcome is Outcome.APPLIED
        assert first.tokens_rolled_over == 70_000
        assert first.rollover.limit_source == "previous_plan"
        assert first.rollover.window_start == utc(2025, 1, 1)
        assert first.rollover.window_end == utc(2025, 2, 1)
        assert second.outcome is Outcome.ROLLOVER_ALREADY_APPLIED

        credits = _rows(db_session, TokenRollover)
        assert len(credits) == 1
        assert credits[0].tokens_rolled_over == 70_000
        assert credits[0].subscription_id == previous.id
        assert metrics.get_snapshot()["tokens_rolled_over_total"] == 70_000

    def test_cold_start_uses_current_plan_limit(self, reconciler, plans, db_session, subscription_event):
        result = reconciler.reconcile(_event(subscription_event(price="price_starter")))

        assert result.outcome is Outcome.APPLIED
        assert result.rollover.limit_source == "current_plan"
        assert result.rollover.previous_limit == 20_000
        assert result.rollover.window_start == utc(2025, 1, 1)
        assert result.tokens_rolled_over == 20_000

    def test_absent_usage_rolls_over_previous_plan_limit(self, reconciler, plans, db_session, subscription_event):
        _seed_previous(db_session, plans["starter"])

        # Upgrade to pro at the period boundary
        result = reconciler.reconcile(_event(subscription_event(price="price_pro")))

        assert result.rollover.tokens_used == 0
        assert result.rollover.previous_limit == 20_000
        assert result.tokens_rolled_over == 20_000

    def test_overage_writes_checkpoint_but_no_credit(self, reconciler, plans, db_session, subscription_event):
        previous = _seed_previous(db_session, plans["starter"])
        _usage(db_session, previous.id, 45_000)

        first = reconciler.reconcile(_event(subscription_event(price="price_starter")))
        second = reconciler.reconcile(_event(subscription_event(price="price_starter")))

        assert first.outcome is Outcome.APPLIED
        assert first.tokens_rolled_over == 0
        assert second.outcome is Outcome.ROLLOVER_ALREADY_APPLIED
        assert _rows(db_session, TokenRollover) == []
        assert len(_rows(db_session, RolloverCheckpoint)) == 1

    def test_earlier_credits_do_not_compound(self, reconciler, plans, db_session, subscription_event):
        previous = _seed_previous(db_session, plans["pro"])
        _usage(db_session, previous.id, 30_000)
        for start, end in [(utc(2024, 11, 1), utc(2024, 12, 1)), (utc(2024, 12, 1), utc(2025, 1, 1))]:
            db_session.add(TokenRollover(
                user_id="user-1",
                subscription_id=previous.id,
                tokens_rolled_over=90_000,
                from_period_start=start,
                from_period_end=end,
            ))
        db_session.commit()

        result = reconciler.reconcile(_event(subscription_event()))

        assert result.tokens_rolled_over == 70_000

    def test_period_chain(self, reconciler, plans, db_session, subscription_event):
        jan = reconciler.reconcile(_event(subscription_event(
            period_start=utc(2025, 1, 1), period_end=utc(2025, 2, 1), event_id="evt_jan",
        )))
        assert jan.rollover.limit_source == "current_plan"
        _usage(db_session, jan.subscription_row_id, 30_000)

        feb = reconciler.reconcile(_event(subscription_event(
            period_start=utc(2025, 2, 1), period_end=utc(2025, 3, 1), event_id="evt_feb",
        )))
        _usage(db_session, jan.subscription_row_id, 95_000, start=utc(2025, 2, 1), end=utc(2025, 3, 1))

        mar = reconciler.reconcile(_event(subscription_event(
            period_start=utc(2025, 3, 1), period_end=utc(2025, 4, 1), event_id="evt_mar",
        )))

        assert feb.subscription_row_id == jan.subscription_row_id == mar.subscription_row_id
        assert feb.rollover.limit_source == "previous_plan"
        assert feb.tokens_rolled_over == 70_000
        assert mar.rollover.window_start == utc(2025, 2, 1)
        assert mar.tokens_rolled_over == 5_000
        assert len(_rows(db_session, RolloverCheckpoint)) == 3


    def test_skipped_periods_count_only_last_snapshot_period(self, reconciler, plans, db_session, subscription_event):
        previous = _seed_previous(db_session, plans["pro"])
        for month in (1, 2, 3):
            _usage(db_session, previous.id, 40_000, start=utc(2025, month, 1), end=utc(2025, month + 1, 1))

        # No events arrived for February or March
        result = reconciler.reconcile(_event(subscription_event(
            period_start=utc(2025, 4, 1), period_end=utc(2025, 5, 1),
        )))

        assert result.outcome is Outcome.APPLIED
        assert result.rollover.window_start == utc(2025, 1, 1)
        assert result.rollover.window_end == utc(2025, 2, 1)
        assert result.rollover.tokens_used == 40_000
        assert result.tokens_rolled_over == 60_000

    def test_out_of_order_event_ignores_later_snapshot(self, reconciler, plans, db_session, subscription_event):
        _seed_previous(db_session, plans["starter"], start=utc(2025, 3, 1), end=utc(2025, 4, 1))

        result = reconciler.reconcile(_event(subscription_event()))

        assert result.rollover.limit_source == "current_plan"
        assert result.rollover.previous_limit == 100_000

    def test_snapshot_reflects_event(self, reconciler, plans, db_session, subscription_event):
        reconciler.reconcile(_event(subscription_event(status="past_due")))

        snapshot = _rows(db_session, UserSubscription)[0]
        assert snapshot.user_id == "user-1"
        assert snapshot.plan_id == plans["pro"].id
        assert snapshot.status == "past_due"

        mirror = _rows(db_session, StripeSubscription)[0]
        assert mirror.customer_id == "cus_123"
        assert mirror.price_id == "price_pro"
        assert mirror.current_period_start == int(utc(2025, 2, 1).timestamp())


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class TestIdentity:

    def test_mapping_created_once(self, reconciler, plans, db_session, subscription_event):
        for n in range(4):
            reconciler.reconcile(_event(subscription_event(event_id=f"evt_{n}")))

        mappings = _rows(db_session, BillingCustomer)
        assert len(mappings) == 1
        assert mappings[0].user_id == "user-1"

    def test_existing_mapping_wins_over_hint(self, reconciler, plans, db_session, subscription_event):
        db_session.add(BillingCustomer(customer_id="cus_123", user_id="user-original"))
        db_session.commit()

        result = reconciler.reconcile(_event(subscription_event(user_id="user-other")))

        assert result.user_id == "user-original"
        assert _rows(db_session, UserSubscription)[0].user_id == "user-original"

    def test_mapping_resolves_without_hint(self, reconciler, plans, db_session, subscription_event):
        db_session.add(BillingCustomer(customer_id="cus_123", user_id="user-1"))
        db_session.commit()

        result = reconciler.reconcile(_event(subscription_event(user_id=None)))

        assert result.outcome is Outcome.APPLIED
        assert result.user_id == "user-1"

    def test_unresolved_customer(self, reconciler, plans, db_session, subscription_event, issues):
        result = reconciler.reconcile(_event(subscription_event(user_id=None)))

        assert result.outcome is Outcome.UNRESOLVED_CUSTOMER
        assert "cus_123" in result.detail
        assert _rows(db_session, UserSubscription) == []
        assert _rows(db_session, BillingCustomer) == []
        assert _issue_codes(issues) == {"CWB-IDN-001"}


# ---------------------------------------------------------------------------
# Terminal no-ops
# ---------------------------------------------------------------------------

class TestNoOps:

    def test_deleted_event_is_ignored(self, reconciler, plans, db_session, subscription_event, issues, metrics):
        result = reconciler.reconcile(_event(subscription_event(event_type="customer.subscription.deleted")))

        assert result.outcome is Outcome.IGNORED_EVENT_TYPE
        assert result.ok
        assert _rows(db_session, BillingCustomer) == []
        assert _rows(db_session, UserSubscription) == []
        assert _rows(db_session, StripeSubscription) == []
        assert len(issues) == 0
        assert metrics.get_snapshot()["webhook_outcomes_total"] == {"ignored_event_type": 1}

    def test_incomplete_payload(self, reconciler, plans, db_session, subscription_event, issues):
        raw = subscription_event()
        raw["data"]["object"]["items"] = {"data": []}

        result = reconciler.reconcile(_event(raw))

        assert result.outcome is Outcome.INCOMPLETE_PAYLOAD
        assert "price_id" in result.detail
        assert _rows(db_session, UserSubscription) == []
        assert _issue_codes(issues) == {"CWB-EVT-002"}

    def test_unknown_price(self, reconciler, plans, db_session, subscription_event, issues):
        result = reconciler.reconcile(_event(subscription_event(price="price_retired")))

        assert result.outcome is Outcome.UNKNOWN_PRICE
        assert result.user_id == "user-1"
        assert _rows(db_session, UserSubscription) == []
        assert _rows(db_session, TokenRollover) == []
        # The mapping is still learned from the hint
        assert len(_rows(db_session, BillingCustomer)) == 1
        assert _issue_codes(issues) == {"CWB-PLN-001"}


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------

class TestStorageFailures:

    def test_snapshot_failure_skips_rollover(self, reconciler, plans, db_session, subscription_event, metrics, issues):
        failure = StorageWriteFailure("CWB-DB-001", detail="deadlock detected")
        with patch.object(reconciler.store, "upsert_subscription", side_effect=failure):
            result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.SNAPSHOT_FAILED
        assert not result.ok
        assert [f.code for f in result.failures] == ["CWB-DB-001"]
        assert _rows(db_session, RolloverCheckpoint) == []
        assert _rows(db_session, TokenRollover) == []
        # Mirror is independent of the snapshot
        assert len(_rows(db_session, StripeSubscription)) == 1
        assert metrics.get_snapshot()["webhook_storage_failures_total"] == {"CWB-DB-001": 1}
        assert _issue_codes(issues) == {"CWB-DB-001"}

    def test_rollover_failure_is_recorded_and_retry_succeeds(self, reconciler, plans, db_session, subscription_event, metrics):
        previous = _seed_previous(db_session, plans["pro"])
        _usage(db_session, previous.id, 30_000)

        failure = StorageWriteFailure("CWB-DB-002", detail="connection reset")
        with patch.object(reconciler.store, "record_rollover", side_effect=failure):
            failed = reconciler.reconcile(_event(subscription_event()))

        assert failed.outcome is Outcome.ROLLOVER_FAILED
        assert failed.subscription_row_id == previous.id
        assert _rows(db_session, TokenRollover) == []

        retried = reconciler.reconcile(_event(subscription_event(event_id="evt_1_retry")))

        assert retried.outcome is Outcome.APPLIED
        assert retried.tokens_rolled_over == 70_000
        assert len(_rows(db_session, TokenRollover)) == 1
        assert metrics.get_snapshot()["tokens_rolled_over_total"] == 70_000

    def test_mirror_failure_still_applies(self, reconciler, plans, db_session, subscription_event):
        failure = StorageWriteFailure("CWB-DB-003", detail="disk full")
        with patch.object(reconciler.store, "upsert_stripe_mirror", side_effect=failure):
            result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.APPLIED
        assert [f.code for f in result.failures] == ["CWB-DB-003"]
        assert len(_rows(db_session, UserSubscription)) == 1

    def test_mapping_failure_proceeds_with_hint(self, reconciler, plans, db_session, subscription_event):
        failure = StorageWriteFailure("CWB-DB-004", detail="timeout")
        with patch.object(reconciler.store, "link_customer", side_effect=failure):
            result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.APPLIED
        assert result.user_id == "user-1"
        assert [f.code for f in result.failures] == ["CWB-DB-004"]
        assert _rows(db_session, BillingCustomer) == []

    def test_concurrent_claim_reports_already_applied(self, reconciler, plans, db_session, subscription_event, metrics):
        previous = _seed_previous(db_session, plans["pro"])
        db_session.add(RolloverCheckpoint(
            user_id="user-1",
            subscription_id=previous.id,
            from_period_start=utc(2025, 2, 1),
        ))
        db_session.commit()

        # Another delivery claimed the key between the gate read and the insert
        with patch.object(reconciler.store, "rollover_recorded", return_value=False):
            result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.ROLLOVER_ALREADY_APPLIED
        assert result.rollover is not None
        assert _rows(db_session, TokenRollover) == []
        assert metrics.get_snapshot()["tokens_rolled_over_total"] == 0

    def test_read_failure_is_recorded_not_raised(self, plans, db_session, subscription_event, metrics, issues):
        # Fresh in-memory database with no tables: every read fails
        reconciler = SubscriptionReconciler(
            verifier=StripeEventVerifier(secret=WEBHOOK_SECRET),
            store=SqlBillingStore(engine=create_engine("sqlite://")),
            metrics=metrics,
            issues=issues,
        )

        result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.READ_FAILED
        assert [f.code for f in result.failures] == ["CWB-DB-005"]
        assert "no such table" in result.failures[0].detail
        assert result.user_id is None
        assert _rows(db_session, BillingCustomer) == []
        assert _rows(db_session, UserSubscription) == []
        snap = metrics.get_snapshot()
        assert snap["webhook_outcomes_total"] == {"read_failed": 1}
        assert snap["webhook_storage_failures_total"] == {"CWB-DB-005": 1}
        assert _issue_codes(issues) == {"CWB-DB-005"}

    def test_read_failure_after_snapshot_stops_before_rollover(self, reconciler, plans, db_session, subscription_event):
        failure = StorageReadFailure("CWB-DB-005", detail="server closed the connection")
        with patch.object(reconciler.store, "rollover_recorded", side_effect=failure):
            result = reconciler.reconcile(_event(subscription_event()))

        assert result.outcome is Outcome.READ_FAILED
        assert result.subscription_row_id is not None
        assert [f.code for f in result.failures] == ["CWB-DB-005"]
        assert len(_rows(db_session, UserSubscription)) == 1
        assert _rows(db_session, RolloverCheckpoint) == []
        assert stripe_event_id_var.get() is None


# ---------------------------------------------------------------------------
# Raw deliveries
# ---------------------------------------------------------------------------

class TestHandle:

    def test_signed_delivery(self, reconciler, plans, subscription_event):
        body = json.dumps(subscription_event()).encode()

        result = reconciler.handle(body, sign_payload(body))

        assert result.outcome is Outcome.APPLIED
        assert result.event_id == "evt_1"

    def test_bad_signature_writes_nothing(self, reconciler, plans, db_session, subscription_event, metrics):
        body = json.dumps(subscription_event()).encode()

        with pytest.raises(InvalidSignature):
            reconciler.handle(body, sign_payload(body, secret="whsec_wrong"))

        assert _rows(db_session, BillingCustomer) == []
        assert _rows(db_session, UserSubscription) == []
        assert _rows(db_session, TokenRollover) == []
        assert metrics.get_snapshot()["webhook_signature_failures_total"] == 1
        assert metrics.get_snapshot()["webhook_outcomes_total"] == {}

    def test_event_id_context_is_reset(self, reconciler, plans, subscription_event):
        reconciler.reconcile(_event(subscription_event(event_id="evt_ctx")))
        assert stripe_event_id_var.get() is None
