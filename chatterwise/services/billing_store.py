"""
Billing Store
=============

The narrow storage surface the webhook reconciler needs, and its SQL
implementation on SQLModel/SQLAlchemy.

Race handling lives in the database, not here:
    - stripe_customers.customer_id is unique: concurrent first events for a
      customer both insert, the loser re-reads the winner's user id.
    - user_subscriptions.user_id is unique: snapshot writes are a native
      ``INSERT ... ON CONFLICT DO UPDATE`` (last write wins).
    - rollover_checkpoints and token_rollovers are unique on
      (user_id, subscription_id, from_period_start): a duplicate claim
      raises IntegrityError, which record_rollover() reports as "already
      applied".

Write failures other than those constraint hits are raised as
StorageWriteFailure carrying the registry code for the write. Read failures
are raised as StorageReadFailure (CWB-DB-005).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from chatterwise.core.database import as_utc, get_engine, get_session_context
from chatterwise.core.errors import StorageReadFailure, StorageWriteFailure
from chatterwise.models.billing import (
    BillingCustomer,
    RolloverCheckpoint,
    StripeSubscription,
    SubscriptionPlan,
    TokenRollover,
    UsageRecord,
    UserSubscription,
)
from chatterwise.models.webhook import SubscriptionPayload
from chatterwise.services.rollover import RolloverDecision

logger = logging.getLogger(__name__)

__all__ = [
    "BillingStore",
    "PlanRef",
    "RolloverKey",
    "SnapshotRef",
    "SqlBillingStore",
]


@dataclass(frozen=True)
class PlanRef:
    id: int
    name: str
    token_limit: int


@dataclass(frozen=True)
class SnapshotRef:
    id: int
    user_id: str
    plan_id: int
    status: Optional[str]
    current_period_start: datetime
    current_period_end: datetime


@dataclass(frozen=True)
class RolloverKey:
    """Idempotency key for one period transition."""
    user_id: str
    subscription_id: int
    from_period_start: datetime


class BillingStore(Protocol):
    def get_customer_user(self, customer_id: str) -> Optional[str]: ...

    def link_customer(self, customer_id: str, user_id: str) -> str: ...

    def get_plan_by_price(self, price_id: str) -> Optional[PlanRef]: ...

    def get_plan(self, plan_id: int) -> Optional[PlanRef]: ...

    def get_subscription(self, user_id: str) -> Optional[SnapshotRef]: ...

    def upsert_subscription(
        self, user_id: str, plan_id: int, payload: SubscriptionPayload
    ) -> SnapshotRef: ...

    def upsert_stripe_mirror(self, payload: SubscriptionPayload) -> None: ...

    def rollover_recorded(self, key: RolloverKey) -> bool: ...

    def sum_usage(
        self,
        user_id: str,
        subscription_id: int,
        metric_name: str,
        window_start: datetime,
        window_end: datetime,
    ) -> int: ...

    def record_rollover(
        self, key: RolloverKey, period_end: datetime, decision: RolloverDecision
    ) -> bool: ...


def _plan_ref(plan: SubscriptionPlan) -> PlanRef:
    return PlanRef(id=plan.id, name=plan.name, token_limit=plan.token_limit)


def _snapshot_ref(row: UserSubscription) -> SnapshotRef:
    return SnapshotRef(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
    )


def _upsert(
    session: Session,
    model: Any,
    values: Dict[str, Any],
    index_elements: List[str],
) -> None:
    """Dialect-aware ``INSERT ... ON CONFLICT (index_elements) DO UPDATE``."""
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        from sqlalchemy.dialects.sqlite import insert as dialect_insert

    stmt = dialect_insert(model.__table__).values(**values)
    update_columns = [col for col in values if col not in index_elements]
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    session.execute(stmt)


class SqlBillingStore:
    """BillingStore backed by the service database (Postgres or SQLite)."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_engine()

    def _session(self):
        return get_session_context(self.engine)

    @contextmanager
    def _reading(self, operation: str, **context: Any) -> Iterator[Session]:
        """Session for a read; SQLAlchemy errors become CWB-DB-005."""
        try:
            with self._session() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageReadFailure(
                "CWB-DB-005", detail=str(exc), context={"operation": operation, **context}
            ) from exc

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_customer_user(self, customer_id: str) -> Optional[str]:
        with self._reading("get_customer_user", customer_id=customer_id) as session:
            row = session.exec(
                select(BillingCustomer).where(BillingCustomer.customer_id == customer_id)
            ).first()
            return row.user_id if row else None

    def link_customer(self, customer_id: str, user_id: str) -> str:
        """Insert the mapping if absent; return whichever user id is stored."""
        with self._session() as session:
            try:
                session.add(BillingCustomer(customer_id=customer_id, user_id=user_id))
                session.commit()
                return user_id
            except IntegrityError:
                session.rollback()
                logger.info("Customer mapping already exists: customer=%s", customer_id)
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageWriteFailure(
                    "CWB-DB-004", detail=str(exc), context={"customer_id": customer_id}
                ) from exc

        stored = self.get_customer_user(customer_id)
        if stored is None:
            raise StorageWriteFailure(
                "CWB-DB-004",
                detail="mapping insert conflicted but no row is visible",
                context={"customer_id": customer_id},
            )
        return stored

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def get_plan_by_price(self, price_id: str) -> Optional[PlanRef]:
        with self._reading("get_plan_by_price", price_id=price_id) as session:
            plan = session.exec(
                select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id_monthly == price_id)
            ).first()
            return _plan_ref(plan) if plan else None

    def get_plan(self, plan_id: int) -> Optional[PlanRef]:
        with self._reading("get_plan", plan_id=plan_id) as session:
            plan = session.get(SubscriptionPlan, plan_id)
            return _plan_ref(plan) if plan else None

    # ------------------------------------------------------------------
    # Subscription snapshot + Stripe mirror
    # ------------------------------------------------------------------

    def get_subscription(self, user_id: str) -> Optional[SnapshotRef]:
        with self._reading("get_subscription", user_id=user_id) as session:
            row = session.exec(
                select(UserSubscription).where(UserSubscription.user_id == user_id)
            ).first()
            return _snapshot_ref(row) if row else None

    def upsert_subscription(
        self, user_id: str, plan_id: int, payload: SubscriptionPayload
    ) -> SnapshotRef:
        values = {
            "user_id": user_id,
            "stripe_subscription_id": payload.subscription_id,
            "plan_id": plan_id,
            "status": payload.status or "unknown",
            "current_period_start": payload.current_period_start,
            "current_period_end": payload.current_period_end,
            "cancel_at_period_end": payload.cancel_at_period_end,
            "updated_at": datetime.now(timezone.utc),
        }
        with self._session() as session:
            try:
                _upsert(session, UserSubscription, values, index_elements=["user_id"])
                session.commit()
                row = session.exec(
                    select(UserSubscription).where(UserSubscription.user_id == user_id)
                ).one()
                return _snapshot_ref(row)
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageWriteFailure(
                    "CWB-DB-001", detail=str(exc), context={"user_id": user_id}
                ) from exc

    def upsert_stripe_mirror(self, payload: SubscriptionPayload) -> None:
        values = {
            "customer_id": payload.customer_id,
            "subscription_id": payload.subscription_id,
            "price_id": payload.price_id,
            "current_period_start": payload.period_start_unix,
            "current_period_end": payload.period_end_unix,
            "cancel_at_period_end": payload.cancel_at_period_end,
            "payment_method_brand": payload.payment_method_brand,
            "payment_method_last4": payload.payment_method_last4,
            "status": payload.status,
            "updated_at": datetime.now(timezone.utc),
        }
        with self._session() as session:
            try:
                _upsert(session, StripeSubscription, values, index_elements=["customer_id"])
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageWriteFailure(
                    "CWB-DB-003", detail=str(exc), context={"customer_id": payload.customer_id}
                ) from exc

    # ------------------------------------------------------------------
    # Usage + rollover
    # ------------------------------------------------------------------

    def rollover_recorded(self, key: RolloverKey) -> bool:
        """Fast-path gate. The unique constraints remain the real guard."""
        with self._reading("rollover_recorded", user_id=key.user_id) as session:
            checkpoint = session.exec(
                select(RolloverCheckpoint.id)
                .where(RolloverCheckpoint.user_id == key.user_id)
                .where(RolloverCheckpoint.subscription_id == key.subscription_id)
                .where(RolloverCheckpoint.from_period_start == key.from_period_start)
            ).first()
            if checkpoint is not None:
                return True
            # Credits written before checkpoints existed
            credit = session.exec(
                select(TokenRollover.id)
                .where(TokenRollover.user_id == key.user_id)
                .where(TokenRollover.subscription_id == key.subscription_id)
                .where(TokenRollover.from_period_start == key.from_period_start)
            ).first()
            return credit is not None

    def sum_usage(
        self,
        user_id: str,
        subscription_id: int,
        metric_name: str,
        window_start: datetime,
        window_end: datetime,
    ) -> int:
        """Total metric_value for usage periods inside [window_start, window_end]."""
        with self._reading("sum_usage", user_id=user_id) as session:
            total = session.exec(
                select(func.coalesce(func.sum(UsageRecord.metric_value), 0))
                .where(UsageRecord.user_id == user_id)
                .where(UsageRecord.subscription_id == subscription_id)
                .where(UsageRecord.metric_name == metric_name)
                .where(UsageRecord.period_start >= window_start)
                .where(UsageRecord.period_end <= window_end)
            ).one()
            return int(total or 0)

    def record_rollover(
        self, key: RolloverKey, period_end: datetime, decision: RolloverDecision
    ) -> bool:
        """Claim the checkpoint and write the credit in one transaction.

        Returns False when the key was already claimed by another delivery.
        """
        with self._session() as session:
            try:
                session.add(RolloverCheckpoint(
                    user_id=key.user_id,
                    subscription_id=key.subscription_id,
                    from_period_start=key.from_period_start,
                    tokens_used=decision.tokens_used,
                    previous_limit=decision.previous_limit,
                    tokens_rolled_over=decision.tokens_rolled_over,
                ))
                if decision.tokens_rolled_over > 0:
                    session.add(TokenRollover(
                        user_id=key.user_id,
                        subscription_id=key.subscription_id,
                        tokens_rolled_over=decision.tokens_rolled_over,
                        from_period_start=key.from_period_start,
                        from_period_end=period_end,
                    ))
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                return False
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageWriteFailure(
                    "CWB-DB-002",
                    detail=str(exc),
                    context={"user_id": key.user_id, "subscription_id": key.subscription_id},
                ) from exc
