"""Merge queue records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator

QUEUE_VERSION = 1


class EntryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"
    RESUMED = "resumed"


class MergeKind(str, Enum):
    OPERATION = "operation"
    BRANCH = "branch"


ACTIVE_STATUSES = frozenset({EntryStatus.PENDING, EntryStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.CONFLICT})
# resumed entries wait on their operation; a stale one ages out like a terminal one
PRUNABLE_STATUSES = TERMINAL_STATUSES | {EntryStatus.RESUMED}


class QueueEntry(BaseModel):
    """One request to integrate an operation or a bare branch."""

    operation: str
    workspace: str | None = None
    priority: int = 0
    enqueued_at: str
    status: EntryStatus = EntryStatus.PENDING
    merge_kind: MergeKind = MergeKind.OPERATION
    issue_id: str | None = None
    updated_at: str | None = None
    conflict_retries: int = 0
    reason: str | None = None

    @field_validator("operation")
    @classmethod
    def _validate_operation(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Queue entry operation must not be empty")
        return normalized

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_prunable(self) -> bool:
        return self.status in PRUNABLE_STATUSES

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.enqueued_at)


class QueueDocument(BaseModel):
    version: int = QUEUE_VERSION
    entries: list[QueueEntry] = Field(default_factory=list)


@dataclass(slots=True)
class EnqueueResult:
    entry: QueueEntry
    created: bool
    message: str


@dataclass(slots=True)
class StaleVerdict:
    """Whether a pending entry no longer needs merging.

    ``ambiguous`` is set when a collaborator query failed; such entries are
    never stale and are re-checked next cycle.
    """

    stale: bool
    reason: str | None = None
    ambiguous: bool = False


@dataclass(slots=True)
class Readiness:
    ready: bool
    reason: str | None = None

    @property
    def retryable_error(self) -> bool:
        return bool(self.reason and self.reason.startswith("error:"))


@dataclass(slots=True)
class ProcessOutcome:
    """Result of one :meth:`MergeProcessor.process` call: busy, completed, failed, conflict or error."""

    status: str
    reason: str | None = None
    merge_commit: str | None = None

    @property
    def busy(self) -> bool:
        return self.status == "busy"


__all__ = [
    "ACTIVE_STATUSES",
    "EnqueueResult",
    "EntryStatus",
    "MergeKind",
    "PRUNABLE_STATUSES",
    "ProcessOutcome",
    "QUEUE_VERSION",
    "QueueDocument",
    "QueueEntry",
    "Readiness",
    "StaleVerdict",
    "TERMINAL_STATUSES",
]
