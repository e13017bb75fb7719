"""
Non-critical issue tracker — in-memory ring buffer.

Tracks recent webhook degradations (storage write failures, unknown prices,
unresolvable customers) by error code so they are visible on the health
endpoint even though Stripe always receives a 200. Persists to
logs/issues.json on shutdown and reloads on startup.
Auto-clears issues that haven't recurred in 1 hour.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_ISSUES = 100
AUTO_CLEAR_SECONDS = 3600  # 1 hour

_DOMAIN_COMPONENTS = {
    "SIG": "signature",
    "EVT": "event",
    "IDN": "identity",
    "PLN": "plan_catalog",
    "DB": "database",
    "CFG": "config",
    "API": "api",
}


@dataclass
class TrackedIssue:
    code: str
    component: str
    count: int = 1
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    last_detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "component": self.component,
            "count": self.count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "last_detail": self.last_detail,
        }


class IssueTracker:
    """Ring buffer of recent non-critical issues."""

    def __init__(self, persist_path: str = "logs/issues.json", max_size: int = MAX_ISSUES):
        self._issues: OrderedDict[str, TrackedIssue] = OrderedDict()
        self._lock = threading.Lock()
        self._max_size = max_size
        self._persist_path = persist_path

    def record(self, code: str, component: str | None = None, detail: str | None = None) -> None:
        """Record an issue occurrence."""
        if component is None:
            # CWB-DB-001 → database
            parts = code.split("-")
            domain = parts[1] if len(parts) >= 3 else ""
            component = _DOMAIN_COMPONENTS.get(domain, "unknown")

        with self._lock:
            if code in self._issues:
                issue = self._issues[code]
                issue.count += 1
                issue.last_seen = time.time()
                issue.last_detail = detail
                self._issues.move_to_end(code)
            else:
                self._issues[code] = TrackedIssue(
                    code=code, component=component, last_detail=detail,
                )
                while len(self._issues) > self._max_size:
                    self._issues.popitem(last=False)

    def get_active_issues(self) -> list[dict]:
        """Return issues that have recurred within the last hour."""
        cutoff = time.time() - AUTO_CLEAR_SECONDS
        with self._lock:
            return [
                issue.to_dict()
                for issue in self._issues.values()
                if issue.last_seen >= cutoff
            ]

    def persist(self) -> None:
        """Save current issues to disk."""
        try:
            directory = os.path.dirname(self._persist_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with self._lock:
                data = [issue.to_dict() for issue in self._issues.values()]
            with open(self._persist_path, "w") as f:
                json.dump(data, f, indent=2)
            logger.info("issue_tracker_persisted", extra={"count": len(data)})
        except OSError as e:
            logger.warning("issue_tracker_persist_failed", extra={"error": str(e)})

    def reload(self) -> None:
        """Reload issues from disk."""
        if not os.path.exists(self._persist_path):
            return
        try:
            with open(self._persist_path, "r") as f:
                data = json.load(f)
            with self._lock:
                for item in data:
                    code = item["code"]
                    self._issues[code] = TrackedIssue(
                        code=code,
                        component=item.get("component", "unknown"),
                        count=item.get("count", 1),
                        first_seen=item.get("first_seen", time.time()),
                        last_seen=item.get("last_seen", time.time()),
                        last_detail=item.get("last_detail"),
                    )
            logger.info("issue_tracker_reloaded", extra={"count": len(self._issues)})
        except (OSError, ValueError, KeyError) as e:
            logger.warning("issue_tracker_reload_failed", extra={"error": str(e)})

    def clear(self) -> None:
        with self._lock:
            self._issues.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._issues)


def _default_persist_path() -> str:
    from chatterwise.config import settings
    return settings.issues_path


# Module-level singleton
issue_tracker = IssueTracker(persist_path=_default_persist_path())
