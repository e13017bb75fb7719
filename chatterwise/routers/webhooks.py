"""
Stripe webhook endpoint.

- POST    /stripe-webhook — subscription lifecycle events
- OPTIONS /stripe-webhook — CORS preflight

Responses: 200 ``{"received": true}`` for every delivery that passes
verification, including ignored and unresolvable ones, so Stripe never
retries an event that cannot succeed. 400 plain text only when the
signature (or body) cannot be verified.

CORS headers are the same ones the browser-facing functions deployed
alongside this server-to-server endpoint send.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from chatterwise.core.errors import InvalidSignature
from chatterwise.core.errors.registry import error_registry
from chatterwise.services.reconciliation import SubscriptionReconciler, get_reconciler

logger = logging.getLogger(__name__)

router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}


@router.options("/stripe-webhook", include_in_schema=False)
async def stripe_webhook_preflight():
    return PlainTextResponse("ok", headers=CORS_HEADERS)


@router.post(
    "/stripe-webhook",
    summary="Stripe Webhook",
    description="Reconcile subscription state and token rollover from Stripe subscription events.",
)
async def stripe_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        result = await asyncio.to_thread(reconciler.handle, payload, signature)
    except InvalidSignature as exc:
        entry = error_registry.get(exc.code)
        return PlainTextResponse(
            f"Webhook Error: {exc.detail}",
            status_code=entry.http_status if entry else 400,
            headers=CORS_HEADERS,
        )

    logger.info(
        "stripe_webhook_processed",
        extra={
            "event_type": result.event_type,
            "outcome": result.outcome.value,
            "storage_failures": len(result.failures),
        },
    )
    return JSONResponse({"received": True}, headers=CORS_HEADERS)
