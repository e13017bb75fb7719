from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatterwise.config import settings
from chatterwise.core.database import close_db, init_db
from chatterwise.core.errors.registry import error_registry
from chatterwise.core.issue_tracker import issue_tracker
from chatterwise.core.log_middleware import CorrelationMiddleware
from chatterwise.core.structured_logging import APP_VERSION, setup_logging
from chatterwise.routers import health, webhooks

setup_logging(log_dir=settings.log_dir, log_level=logging.DEBUG if settings.debug else logging.INFO)

logger = logging.getLogger(__name__)

API_TITLE = "Chatterwise Billing API"
API_DESCRIPTION = """
## Chatterwise Billing

Receives Stripe subscription events, keeps each user's subscription
snapshot current and credits unused chat tokens from the period that just
ended.
"""

TAGS_METADATA = [
    {
        "name": "health",
        "description": "Liveness and webhook processing counters. No authentication required.",
    },
    {
        "name": "webhooks",
        "description": "Stripe webhook receiver. Authenticated by the `stripe-signature` header.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting %s v%s...", API_TITLE, APP_VERSION)

    error_registry.load()
    issue_tracker.reload()

    if not settings.stripe_webhook_secret:
        logger.warning(
            "CHATTERWISE_STRIPE_WEBHOOK_SECRET not set; signed deliveries will be rejected"
        )

    init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutting down %s...", API_TITLE)
    issue_tracker.persist()
    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s %s: %s", request.method, request.url.path, exc,
            exc_info=True, extra={"error.code": "CWB-API-001"},
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(webhooks.router, tags=["webhooks"])
    # Path the Supabase edge function was deployed under; existing Stripe
    # endpoints keep pointing at it.
    app.include_router(webhooks.router, prefix="/functions/v1", tags=["webhooks"], include_in_schema=False)

    return app


app = create_app()
