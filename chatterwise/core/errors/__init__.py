"""
Error code system.

ChatterwiseError is the base exception for all structured errors.
Raise it with an error code from the registry, and the error middleware
will produce a structured JSON response.

Usage:
    from chatterwise.core.errors import ChatterwiseError
    raise ChatterwiseError("CWB-DB-001", detail="user_subscriptions upsert: deadlock detected")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^CWB-[A-Z]{2,6}-\d{3}$")


class ChatterwiseError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "CWB-SIG-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InvalidSignature(ChatterwiseError):
    """Webhook body could not be authenticated or parsed. Nothing is persisted."""

    def __init__(self, detail: str, code: str = "CWB-SIG-001", context: dict | None = None) -> None:
        super().__init__(code, detail=detail, context=context)


class StorageWriteFailure(ChatterwiseError):
    """A best-effort write failed. Reported, never surfaced to Stripe."""


class StorageReadFailure(ChatterwiseError):
    """Billing state could not be read. Ends the run; Stripe is still acknowledged."""
