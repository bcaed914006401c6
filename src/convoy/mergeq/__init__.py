"""Durable merge queue: records, readiness checks and processing."""

from .models import (
    ACTIVE_STATUSES,
    EnqueueResult,
    EntryStatus,
    MergeKind,
    PRUNABLE_STATUSES,
    ProcessOutcome,
    QueueDocument,
    QueueEntry,
    Readiness,
    StaleVerdict,
    TERMINAL_STATUSES,
)
from .processing import CONFLICT_REASON, MergeProcessor
from .queue import MergeQueue, QueueError, QueueLockTimeout
from .readiness import ReadinessChecker

__all__ = [
    "ACTIVE_STATUSES",
    "CONFLICT_REASON",
    "EnqueueResult",
    "EntryStatus",
    "MergeKind",
    "MergeProcessor",
    "MergeQueue",
    "PRUNABLE_STATUSES",
    "ProcessOutcome",
    "QueueDocument",
    "QueueEntry",
    "QueueError",
    "QueueLockTimeout",
    "Readiness",
    "ReadinessChecker",
    "StaleVerdict",
    "TERMINAL_STATUSES",
]
