"""
Health check endpoints.

- GET /api/health           — cheap: process alive, version, uptime
- GET /api/health/webhooks  — webhook outcome counters and active issues

Stripe always gets a 200, so the second endpoint is where dropped writes
(snapshot, rollover, mirror, mapping) and failed reads become visible to
monitoring.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from chatterwise.core.errors.registry import error_registry
from chatterwise.core.issue_tracker import issue_tracker
from chatterwise.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from chatterwise.services.webhook_metrics import webhook_metrics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Cheap health check — no database calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/webhooks")
async def webhook_health():
    """Reconciler counters plus recent non-fatal issues."""
    snapshot = webhook_metrics.get_snapshot()
    issues = [_describe(issue) for issue in issue_tracker.get_active_issues()]
    storage_failures = sum(snapshot["webhook_storage_failures_total"].values())
    return {
        "status": "degraded" if storage_failures else "ok",
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "metrics": snapshot,
        "issues": issues,
    }


def _describe(issue: dict) -> dict:
    """Attach the registry title, severity and remediation to a tracked issue."""
    entry = error_registry.get(issue["code"])
    if entry is None:
        return issue
    return {
        **issue,
        "title": entry.title,
        "severity": entry.severity,
        "remediation": entry.remediation,
    }
