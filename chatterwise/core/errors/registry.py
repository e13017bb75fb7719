"""
Error registry — the CWB-* catalogue in registry.yaml.

Each entry says how loudly an outcome is logged (severity), what the
webhook caller sees (http_status) and what an operator should do about it
(remediation, surfaced on /api/health/webhooks).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from chatterwise.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

VALID_DOMAINS = {"API", "CFG", "SIG", "EVT", "IDN", "PLN", "DB"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {"code", "domain", "title", "severity", "retryable", "http_status", "safe_message", "remediation"}

_DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(idx: int, raw: Dict[str, Any]) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}")

    code, domain, severity = raw["code"], raw["domain"], raw["severity"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    if code.split("-")[1] != domain:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if severity not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {severity!r}")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=severity,
        retryable=bool(raw["retryable"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    """Code → ErrorEntry, loaded once at startup."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        with open(path or _DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self.schema_version = data.get("schema_version", 0)
        self._entries = entries
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def __len__(self) -> int:
        return len(self._entries)


def severity_to_log_fn(severity: str, log: logging.Logger = logger) -> Callable[..., None]:
    """Map registry severity to logger method."""
    return {
        "DEBUG": log.debug,
        "INFO": log.info,
        "WARN": log.warning,
        "ERROR": log.error,
        "CRITICAL": log.critical,
    }.get(severity, log.error)


# Module-level singleton, loaded once at startup
error_registry = ErrorRegistry()
