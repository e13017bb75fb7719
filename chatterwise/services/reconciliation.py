"""
Subscription Reconciler — Stripe Webhook → Subscription State + Rollover
========================================================================

PURPOSE:
    Single-pass pipeline run once per Stripe subscription event:

    1. Event Verifier      — signature + envelope + event-type allow-list
    2. Identity Resolver   — Stripe customer → user (lazy mapping from
                             ``metadata.user_id``)
    3. Plan Resolver       — Stripe price → subscription_plans row
    4. Writer              — snapshot upsert, Stripe mirror upsert,
                             rollover gate, rollover credit

    Any stage may end the run with a no-op acknowledgment. Only an invalid
    signature is an error to the caller; everything else is acknowledged so
    Stripe does not retry events that can never succeed.

ROLLOVER:
    Keyed on (user_id, user_subscriptions.id, current_period_start).
    A fast-path read skips keys already recorded; the unique constraint on
    rollover_checkpoints breaks races between concurrent deliveries. See
    services/rollover.py for the policy.

FAILURES:
    Storage failures never change the HTTP response. A failed write is
    logged with its registry code, attached to the ReconcileResult, counted
    in webhook_metrics and recorded in the issue tracker; the run carries on
    where it can. A failed read (CWB-DB-005) is reported the same way but
    ends the run with Outcome.READ_FAILED.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from chatterwise.config import settings
from chatterwise.core.errors import ChatterwiseError, InvalidSignature, StorageReadFailure, StorageWriteFailure
from chatterwise.core.errors.registry import error_registry, severity_to_log_fn
from chatterwise.core.issue_tracker import IssueTracker, issue_tracker
from chatterwise.core.structured_logging import stripe_event_id_var
from chatterwise.models.webhook import IncompletePayload, StripeEvent, SubscriptionPayload
from chatterwise.services.billing_store import (
    BillingStore,
    PlanRef,
    RolloverKey,
    SnapshotRef,
    SqlBillingStore,
)
from chatterwise.services.rollover import RolloverDecision, compute_rollover, usage_window
from chatterwise.services.stripe_verifier import EventVerifier, StripeEventVerifier
from chatterwise.services.webhook_metrics import WebhookMetrics, webhook_metrics

logger = logging.getLogger(__name__)

__all__ = [
    "Outcome",
    "ReconcileResult",
    "StorageFailure",
    "SubscriptionReconciler",
    "get_reconciler",
]


class Outcome(str, Enum):
    APPLIED = "applied"
    ROLLOVER_ALREADY_APPLIED = "rollover_already_applied"
    SNAPSHOT_FAILED = "snapshot_failed"
    ROLLOVER_FAILED = "rollover_failed"
    IGNORED_EVENT_TYPE = "ignored_event_type"
    INCOMPLETE_PAYLOAD = "incomplete_payload"
    UNRESOLVED_CUSTOMER = "unresolved_customer"
    UNKNOWN_PRICE = "unknown_price"
    READ_FAILED = "read_failed"


# Registry codes for the terminal no-op outcomes
_OUTCOME_CODES = {
    Outcome.IGNORED_EVENT_TYPE: "CWB-EVT-001",
    Outcome.INCOMPLETE_PAYLOAD: "CWB-EVT-002",
    Outcome.UNRESOLVED_CUSTOMER: "CWB-IDN-001",
    Outcome.UNKNOWN_PRICE: "CWB-PLN-001",
}


@dataclass(frozen=True)
class StorageFailure:
    code: str
    detail: Optional[str]


@dataclass
class ReconcileResult:
    """What one pipeline run did. Always acknowledged to Stripe."""

    outcome: Outcome
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    subscription_row_id: Optional[int] = None
    rollover: Optional[RolloverDecision] = None
    detail: Optional[str] = None
    failures: List[StorageFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def tokens_rolled_over(self) -> int:
        return self.rollover.tokens_rolled_over if self.rollover else 0


class SubscriptionReconciler:
    """Runs the verify → identify → plan → write pipeline.

    Collaborators are injected so tests can swap in fakes:
        verifier: authenticates and parses the raw body
        store:    the narrow storage surface (see billing_store.BillingStore)
        metrics / issues: where non-fatal failures surface
    """

    def __init__(
        self,
        verifier: EventVerifier,
        store: BillingStore,
        metrics: Optional[WebhookMetrics] = None,
        issues: Optional[IssueTracker] = None,
        usage_metric_name: Optional[str] = None,
    ):
        self.verifier = verifier
        self.store = store
        self.metrics = metrics if metrics is not None else webhook_metrics
        self.issues = issues if issues is not None else issue_tracker
        self.usage_metric_name = usage_metric_name or settings.usage_metric_name

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, payload: bytes, signature: Optional[str]) -> ReconcileResult:
        """Verify the raw delivery, then reconcile it.

        Raises InvalidSignature before anything is read or written.
        """
        try:
            event = self.verifier.verify(payload, signature)
        except InvalidSignature as exc:
            self.metrics.record_signature_failure()
            self._log_code(exc.code, "webhook_rejected", detail=exc.detail)
            raise
        return self.reconcile(event)

    def reconcile(self, event: StripeEvent) -> ReconcileResult:
        start = time.perf_counter()
        token = stripe_event_id_var.set(event.id)
        result = ReconcileResult(
            outcome=Outcome.APPLIED, event_type=event.type, event_id=event.id,
        )
        try:
            self._run(event, result)
        except StorageReadFailure as exc:
            self._record_failure(result, exc)
            result.outcome = Outcome.READ_FAILED
            result.detail = "Reconciliation stopped: billing state could not be read"
        finally:
            stripe_event_id_var.reset(token)
        self.metrics.record_outcome(result.outcome.value, round((time.perf_counter() - start) * 1000, 2))
        for failure in result.failures:
            self.metrics.record_storage_failure(failure.code)
        if result.tokens_rolled_over and result.outcome is Outcome.APPLIED:
            self.metrics.record_rollover(result.tokens_rolled_over)
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, event: StripeEvent, result: ReconcileResult) -> ReconcileResult:
        if not event.is_subscription_event:
            return self._terminal(result, Outcome.IGNORED_EVENT_TYPE, f"Ignored event type: {event.type}")

        try:
            payload = SubscriptionPayload.from_stripe(event.data.object)
        except IncompletePayload as exc:
            return self._terminal(result, Outcome.INCOMPLETE_PAYLOAD, str(exc))

        user_id = self._resolve_user(payload, result)
        if user_id is None:
            return self._terminal(
                result, Outcome.UNRESOLVED_CUSTOMER,
                f"Could not resolve user_id for customer {payload.customer_id}",
            )
        result.user_id = user_id

        plan = self.store.get_plan_by_price(payload.price_id)
        if plan is None:
            return self._terminal(
                result, Outcome.UNKNOWN_PRICE, f"No plan found for price {payload.price_id}",
            )

        return self._write(payload, user_id, plan, result)

    def _resolve_user(self, payload: SubscriptionPayload, result: ReconcileResult) -> Optional[str]:
        """Lookup first, insert only when missing and a hint is present."""
        user_id = self.store.get_customer_user(payload.customer_id)
        if user_id is not None or not payload.user_id_hint:
            return user_id

        try:
            return self.store.link_customer(payload.customer_id, payload.user_id_hint)
        except StorageWriteFailure as exc:
            self._record_failure(result, exc)
            # The hint is trusted; reconcile with it even though the mapping is missing
            return payload.user_id_hint

    def _write(
        self,
        payload: SubscriptionPayload,
        user_id: str,
        plan: PlanRef,
        result: ReconcileResult,
    ) -> ReconcileResult:
        # Read the prior snapshot before it is overwritten
        previous = self.store.get_subscription(user_id)

        # Step A: snapshot
        snapshot: Optional[SnapshotRef] = None
        try:
            snapshot = self.store.upsert_subscription(user_id, plan.id, payload)
            result.subscription_row_id = snapshot.id
        except StorageWriteFailure as exc:
            self._record_failure(result, exc)

        try:
            self.store.upsert_stripe_mirror(payload)
        except StorageWriteFailure as exc:
            self._record_failure(result, exc)

        if snapshot is None:
            result.outcome = Outcome.SNAPSHOT_FAILED
            result.detail = "Rollover skipped: subscription snapshot was not written"
            return result

        # Step B: idempotency gate (fast path)
        key = RolloverKey(
            user_id=user_id,
            subscription_id=snapshot.id,
            from_period_start=payload.current_period_start,
        )
        if self.store.rollover_recorded(key):
            logger.info(
                "Rollover already exists for this period: user=%s period_start=%s",
                user_id, payload.current_period_start.isoformat(),
            )
            result.outcome = Outcome.ROLLOVER_ALREADY_APPLIED
            return result

        # Step C: compute and record
        decision = self._compute_rollover(key, payload, plan, previous)
        result.rollover = decision
        logger.info(
            "rollover_computed",
            extra={
                "user_id": user_id,
                "tokens_used": decision.tokens_used,
                "previous_limit": decision.previous_limit,
                "limit_source": decision.limit_source,
                "tokens_rolled_over": decision.tokens_rolled_over,
            },
        )

        try:
            recorded = self.store.record_rollover(key, payload.current_period_end, decision)
        except StorageWriteFailure as exc:
            self._record_failure(result, exc)
            result.outcome = Outcome.ROLLOVER_FAILED
            return result

        if not recorded:
            logger.info("Rollover claimed by a concurrent delivery: user=%s", user_id)
            result.outcome = Outcome.ROLLOVER_ALREADY_APPLIED
            return result

        result.outcome = Outcome.APPLIED
        return result

    def _compute_rollover(
        self,
        key: RolloverKey,
        payload: SubscriptionPayload,
        plan: PlanRef,
        previous: Optional[SnapshotRef],
    ) -> RolloverDecision:
        current_start = payload.current_period_start
        if previous is not None and not previous.current_period_start < current_start:
            previous = None

        window_start, window_end = usage_window(
            current_start,
            previous.current_period_start if previous else None,
            previous.current_period_end if previous else None,
        )
        used = self.store.sum_usage(
            key.user_id, key.subscription_id, self.usage_metric_name, window_start, window_end,
        )

        if previous is not None:
            previous_plan = self.store.get_plan(previous.plan_id)
            previous_limit = previous_plan.token_limit if previous_plan else 0
            limit_source = "previous_plan"
        else:
            # No earlier period on record: compare against the current plan
            previous_limit = plan.token_limit
            limit_source = "current_plan"

        return RolloverDecision(
            window_start=window_start,
            window_end=window_end,
            tokens_used=used,
            previous_limit=previous_limit,
            limit_source=limit_source,
            tokens_rolled_over=compute_rollover(previous_limit, max(0, used)),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _terminal(self, result: ReconcileResult, outcome: Outcome, detail: str) -> ReconcileResult:
        result.outcome = outcome
        result.detail = detail
        code = _OUTCOME_CODES[outcome]
        self._log_code(code, detail, event_type=result.event_type, user_id=result.user_id)
        if outcome is not Outcome.IGNORED_EVENT_TYPE:
            self.issues.record(code, detail=detail)
        return result

    def _record_failure(self, result: ReconcileResult, exc: ChatterwiseError) -> None:
        result.failures.append(StorageFailure(code=exc.code, detail=exc.detail))
        message = "storage_read_failed" if isinstance(exc, StorageReadFailure) else "storage_write_failed"
        self._log_code(exc.code, message, detail=exc.detail, **exc.context)
        self.issues.record(exc.code, detail=exc.detail)

    def _log_code(self, code: str, message: str, **context) -> None:
        entry = error_registry.get(code)
        log_fn = severity_to_log_fn(entry.severity, logger) if entry else logger.warning
        log_fn(
            message,
            extra={
                "error.code": code,
                "error.title": entry.title if entry else None,
                **{f"ctx.{k}": v for k, v in context.items() if v is not None},
            },
        )


_reconciler: Optional[SubscriptionReconciler] = None


def get_reconciler() -> SubscriptionReconciler:
    """FastAPI dependency — process-wide reconciler with production collaborators."""
    global _reconciler
    if _reconciler is None:
        _reconciler = SubscriptionReconciler(
            verifier=StripeEventVerifier(),
            store=SqlBillingStore(),
        )
    return _reconciler
