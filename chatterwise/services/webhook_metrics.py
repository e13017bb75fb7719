"""
Webhook Metrics — In-memory counters for reconciler outcomes.

Every delivery ends in an outcome (applied, ignored, unresolved, ...) and
possibly in one or more storage failures that Stripe never hears about.
These counters, plus the issue tracker, are where those failures surface.
In-memory only — resets on restart.
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Any, Dict


class WebhookMetrics:
    """Thread-safe in-memory counters for webhook processing."""

    def __init__(self):
        self._lock = Lock()
        self._outcomes: Dict[str, int] = defaultdict(int)
        self._storage_failures: Dict[str, int] = defaultdict(int)
        self._signature_failures: int = 0
        self._tokens_rolled_over: int = 0
        self._latency_samples: list = []
        self._max_latency_samples = 1000

    def record_outcome(self, outcome: str, duration_ms: float) -> None:
        with self._lock:
            self._outcomes[outcome] += 1
            self._latency_samples.append(duration_ms)
            if len(self._latency_samples) > self._max_latency_samples:
                self._latency_samples = self._latency_samples[-self._max_latency_samples:]

    def record_storage_failure(self, code: str) -> None:
        with self._lock:
            self._storage_failures[code] += 1

    def record_signature_failure(self) -> None:
        with self._lock:
            self._signature_failures += 1

    def record_rollover(self, tokens: int) -> None:
        with self._lock:
            self._tokens_rolled_over += tokens

    def get_snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time snapshot of all counters."""
        with self._lock:
            latency = {}
            if self._latency_samples:
                sorted_s = sorted(self._latency_samples)
                latency = {
                    "count": len(sorted_s),
                    "avg_ms": round(sum(sorted_s) / len(sorted_s), 1),
                    "p50_ms": sorted_s[len(sorted_s) // 2],
                    "p95_ms": sorted_s[int(len(sorted_s) * 0.95)],
                    "max_ms": sorted_s[-1],
                }
            return {
                "webhook_outcomes_total": dict(self._outcomes),
                "webhook_storage_failures_total": dict(self._storage_failures),
                "webhook_signature_failures_total": self._signature_failures,
                "tokens_rolled_over_total": self._tokens_rolled_over,
                "webhook_latency_ms": latency,
            }

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._storage_failures.clear()
            self._signature_failures = 0
            self._tokens_rolled_over = 0
            self._latency_samples = []


webhook_metrics = WebhookMetrics()
