"""
Stripe Webhook Verifier
=======================

First stage of the reconciler: authenticate the raw body against the
endpoint signing secret and parse it into a StripeEvent.

Signature verification uses ``stripe.WebhookSignature.verify_header`` (the
``t=<ts>,v1=<hmac-sha256>`` scheme with replay tolerance). Requests without
a ``stripe-signature`` header are parsed as trusted JSON when
``allow_unsigned_webhooks`` is on. That path exists for local replay and
test fixtures and is NOT production-safe.
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Protocol

import stripe
from pydantic import ValidationError

from chatterwise.config import settings
from chatterwise.core.errors import InvalidSignature
from chatterwise.models.webhook import StripeEvent

logger = logging.getLogger(__name__)

__all__ = ["EventVerifier", "StripeEventVerifier", "parse_event"]


class EventVerifier(Protocol):
    def verify(self, payload: bytes, signature: Optional[str]) -> StripeEvent:
        ...


class StripeEventVerifier:
    """Verifies Stripe webhook signatures with the configured signing secret."""

    def __init__(
        self,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        allow_unsigned: Optional[bool] = None,
    ):
        self.secret = secret if secret is not None else settings.stripe_webhook_secret
        self.tolerance = tolerance if tolerance is not None else settings.stripe_signature_tolerance_s
        self.allow_unsigned = (
            allow_unsigned if allow_unsigned is not None else settings.allow_unsigned_webhooks
        )

    def verify(self, payload: bytes, signature: Optional[str]) -> StripeEvent:
        """Return the parsed event or raise InvalidSignature."""
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Webhook body is not UTF-8", code="CWB-SIG-003") from exc

        if signature:
            if not self.secret:
                raise InvalidSignature(
                    "stripe-signature present but no webhook secret configured",
                    code="CWB-CFG-001",
                )
            try:
                stripe.WebhookSignature.verify_header(
                    body, signature, self.secret, tolerance=self.tolerance
                )
            except stripe.SignatureVerificationError as exc:
                raise InvalidSignature(str(exc)) from exc
            return parse_event(body)

        if not self.allow_unsigned:
            raise InvalidSignature("No stripe-signature header value was provided.", code="CWB-SIG-002")

        event = parse_event(body)
        logger.warning(
            "unsigned_webhook_accepted",
            extra={"event_type": event.type, "event_id": event.id},
        )
        return event


def parse_event(body: str) -> StripeEvent:
    """Parse a JSON event envelope, raising InvalidSignature when malformed."""
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise InvalidSignature(f"Invalid JSON payload: {exc}", code="CWB-SIG-003") from exc

    try:
        return StripeEvent.model_validate(data)
    except ValidationError as exc:
        raise InvalidSignature(
            f"Event envelope is missing type or data.object ({exc.error_count()} errors)",
            code="CWB-SIG-003",
        ) from exc
