"""
Chatterwise Billing Configuration
=================================

PURPOSE:
    Pydantic-Settings based configuration for the billing webhook service.
    All settings can be overridden via environment variables (CHATTERWISE_ prefix).
    DATABASE_URL is read without prefix by chatterwise.core.database so the same
    value can be shared with Alembic and the Supabase tooling.
"""

import logging
from typing import Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the webhook reconciler."""

    app_name: str = "Chatterwise Billing"
    debug: bool = False

    # Stripe
    stripe_webhook_secret: Optional[str] = None
    stripe_signature_tolerance_s: int = 300

    # Unsigned bodies are parsed as trusted JSON (test/replay only).
    # NOT production-safe: set CHATTERWISE_ALLOW_UNSIGNED_WEBHOOKS=false in prod.
    allow_unsigned_webhooks: bool = True

    # Usage metric whose unused balance rolls over between periods
    usage_metric_name: str = "chat_tokens_per_month"

    # Storage / logs
    data_directory: str = "/data"
    log_dir: str = "logs"
    issues_path: str = "logs/issues.json"

    class Config:
        env_file = ".env"
        env_prefix = "CHATTERWISE_"


settings = Settings()

if settings.allow_unsigned_webhooks:
    logger.warning(
        "Unsigned Stripe webhooks are accepted as trusted JSON. "
        "Set CHATTERWISE_ALLOW_UNSIGNED_WEBHOOKS=false in production."
    )
