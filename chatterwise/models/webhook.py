"""
Webhook payload schemas.

Stripe events arrive as loosely-typed JSON. They are validated once, at the
edge of the pipeline, into StripeEvent / SubscriptionPayload so the rest of
the reconciler never inspects optional keys. A subscription object missing any
required field raises IncompletePayload, which the reconciler turns into a
no-op acknowledgment.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

SUBSCRIPTION_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
})


class IncompletePayload(ValueError):
    """Subscription object lacks a field the reconciler needs."""

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"missing subscription fields: {', '.join(missing)}")


class EventData(BaseModel):
    object: Dict[str, Any]


class StripeEvent(BaseModel):
    """Minimal event envelope: ``{type, data: {object}}``."""

    id: Optional[str] = None
    type: str
    livemode: bool = False
    data: EventData

    @property
    def is_subscription_event(self) -> bool:
        return self.type in SUBSCRIPTION_EVENT_TYPES


class SubscriptionPayload(BaseModel):
    """The subset of a Stripe subscription the reconciler reads."""

    subscription_id: Optional[str] = None
    customer_id: str = Field(min_length=1)
    price_id: str = Field(min_length=1)
    status: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    user_id_hint: Optional[str] = None
    payment_method_brand: Optional[str] = None
    payment_method_last4: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "SubscriptionPayload":
        """Validate a ``customer.subscription.*`` object.

        Period bounds are read from the first line item (Stripe API
        2025-03-31 and later) and fall back to the subscription-level fields
        older API versions send.
        """
        item = _first_item(obj)
        price = item.get("price") or {}
        metadata = obj.get("metadata") or {}
        card = _card(obj.get("default_payment_method"))

        raw = {
            "subscription_id": obj.get("id"),
            "customer_id": _customer_id(obj.get("customer")),
            "price_id": price.get("id") if isinstance(price, dict) else price,
            "status": obj.get("status"),
            "current_period_start": _from_unix(
                item.get("current_period_start") or obj.get("current_period_start")
            ),
            "current_period_end": _from_unix(
                item.get("current_period_end") or obj.get("current_period_end")
            ),
            "cancel_at_period_end": bool(obj.get("cancel_at_period_end") or False),
            "user_id_hint": metadata.get("user_id") or None,
            "payment_method_brand": card.get("brand"),
            "payment_method_last4": card.get("last4"),
        }
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            missing = sorted({str(err["loc"][0]) for err in exc.errors()})
            raise IncompletePayload(missing) from exc

    @property
    def period_start_unix(self) -> int:
        return int(self.current_period_start.timestamp())

    @property
    def period_end_unix(self) -> int:
        return int(self.current_period_end.timestamp())


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    if items and isinstance(items[0], dict):
        return items[0]
    return {}


def _customer_id(customer: Any) -> Optional[str]:
    # Expanded customers arrive as objects
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _card(payment_method: Any) -> Dict[str, Any]:
    # Unexpanded payment methods are bare ids with no card details
    if isinstance(payment_method, dict):
        return payment_method.get("card") or {}
    return {}


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None
