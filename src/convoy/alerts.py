"""Operator alerts: a WARNING log line plus an audit record when the store is available."""

from __future__ import annotations

import logging
from typing import Any

from .storage.chroma import ChromaStore, ChromaUnavailableError

logger = logging.getLogger(__name__)

WORKER_CRASH = "worker_crash_alert"
WORKER_STOPPED = "worker_stopped"
MERGE_FAILED = "merge_failed"
MERGE_CONFLICT = "merge_conflict"


class AlertSink:
    def __init__(self, audit: ChromaStore | None = None) -> None:
        self._audit = audit

    @property
    def audit(self) -> ChromaStore | None:
        return self._audit

    def raise_alert(self, kind: str, message: str, *, operation: str | None = None, **details: Any) -> None:
        logger.warning(message, extra={"alert": kind, "operation": operation, **details})
        if self._audit is None:
            return
        try:
            self._audit.record_alert(kind=kind, message=message, operation=operation, details=details)
        except ChromaUnavailableError as exc:
            logger.warning("Audit store unavailable; alert not persisted", extra={"alert": kind, "error": str(exc)})

    def record_merge(
        self,
        operation: str,
        outcome: str,
        *,
        reason: str | None = None,
        merge_commit: str | None = None,
    ) -> None:
        if self._audit is None:
            return
        try:
            self._audit.record_merge(operation=operation, outcome=outcome, reason=reason, merge_commit=merge_commit)
        except ChromaUnavailableError as exc:
            logger.warning("Audit store unavailable; merge outcome not persisted", extra={"error": str(exc)})


__all__ = ["AlertSink", "MERGE_CONFLICT", "MERGE_FAILED", "WORKER_CRASH", "WORKER_STOPPED"]
