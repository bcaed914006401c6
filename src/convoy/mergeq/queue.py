"""Durable merge queue backed by ``mergeq/queue.json``.

Every read-modify-write of the queue file happens under ``.queue.lock``. The
lock is taken with a short retry loop and released as soon as the file has
been replaced, so the daemon and operators enqueueing work never wait on a
merge in progress.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import ValidationError

from ..config import ConvoySettings
from ..locking import FileLock, LivenessChecker, LockHeldError
from ..state.machine import StateMachine
from ..state.models import Phase
from ..state.store import atomic_write_text
from ..timeutil import Clock, format_timestamp, parse_timestamp, utc_now
from .models import (
    EnqueueResult,
    EntryStatus,
    MergeKind,
    QueueDocument,
    QueueEntry,
)

logger = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """Raised when the queue file cannot be read or written."""


class QueueLockTimeout(QueueError):
    """Raised when the queue lock stays busy through every retry."""


class MergeQueue:
    def __init__(
        self,
        settings: ConvoySettings,
        machine: StateMachine,
        *,
        clock: Clock | None = None,
        liveness: LivenessChecker | None = None,
        sleep: Callable[[float], None] | None = None,
        holder: str = "mergeq",
    ) -> None:
        self._settings = settings
        self._machine = machine
        self._clock = clock or utc_now
        self._liveness = liveness
        self._sleep = sleep or time.sleep
        self._holder = holder

    @property
    def path(self) -> Path:
        return self._settings.queue_file

    @property
    def machine(self) -> StateMachine:
        return self._machine

    def now(self) -> str:
        return format_timestamp(self._clock())

    def load(self) -> QueueDocument:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return QueueDocument()
        if not raw.strip():
            return QueueDocument()
        try:
            return QueueDocument.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise QueueError(f"Corrupt queue file {self.path}: {exc}") from exc

    def _save(self, document: QueueDocument) -> None:
        text = json.dumps(document.model_dump(mode="json"), indent=2)
        atomic_write_text(self.path, text + "\n")

    @contextmanager
    def _locked(self) -> Iterator[QueueDocument]:
        lock = FileLock(
            self._settings.queue_lock_file,
            self._holder,
            liveness=self._liveness,
            sleep=self._sleep,
        )
        try:
            lock.acquire_with_retry(self._settings.lock_retry_attempts, self._settings.lock_retry_delay)
        except LockHeldError as exc:
            raise QueueLockTimeout(f"Timed out waiting for queue lock: {exc}") from exc
        try:
            document = self.load()
            yield document
            self._save(document)
        finally:
            lock.release()

    def entries(self) -> list[QueueEntry]:
        return list(self.load().entries)

    def find(self, operation: str) -> QueueEntry | None:
        for entry in reversed(self.load().entries):
            if entry.operation == operation:
                return entry
        return None

    def with_status(self, status: EntryStatus | str) -> list[QueueEntry]:
        wanted = EntryStatus(status)
        return [entry for entry in self.load().entries if entry.status == wanted]

    def pending(self) -> list[QueueEntry]:
        """Pending entries in dequeue order: priority, then FIFO."""

        return sorted(self.with_status(EntryStatus.PENDING), key=lambda entry: entry.sort_key)

    def next_pending(self) -> QueueEntry | None:
        pending = self.pending()
        return pending[0] if pending else None

    def enqueue(
        self,
        operation: str,
        *,
        priority: int = 0,
        merge_kind: MergeKind | str | None = None,
        issue_id: str | None = None,
        workspace: str | None = None,
    ) -> EnqueueResult:
        record = self._machine.store.get(operation) if "/" not in operation else None
        if merge_kind is None:
            merge_kind = MergeKind.OPERATION if record is not None else MergeKind.BRANCH
        merge_kind = MergeKind(merge_kind)
        if workspace is None and record is not None:
            workspace = record.worktree

        now = self.now()
        with self._locked() as document:
            existing = next(
                (entry for entry in reversed(document.entries) if entry.operation == operation),
                None,
            )
            if existing is not None and existing.is_active:
                logger.info("Operation already in queue", extra={"operation": operation})
                return EnqueueResult(entry=existing, created=False, message="already in queue")

            if existing is not None:
                existing.status = EntryStatus.PENDING
                existing.enqueued_at = now
                existing.updated_at = now
                existing.priority = priority
                existing.merge_kind = merge_kind
                existing.conflict_retries = 0
                existing.reason = None
                if issue_id is not None:
                    existing.issue_id = issue_id
                if workspace is not None:
                    existing.workspace = workspace
                entry, message = existing, "re-enqueued"
            else:
                entry = QueueEntry(
                    operation=operation,
                    workspace=workspace,
                    priority=priority,
                    enqueued_at=now,
                    updated_at=now,
                    merge_kind=merge_kind,
                    issue_id=issue_id,
                )
                document.entries.append(entry)
                message = "enqueued"

        logger.info(
            "Merge entry enqueued",
            extra={"operation": operation, "priority": priority, "merge_kind": merge_kind.value},
        )
        if record is not None:
            self._machine.store.append_event(operation, "merge:queued", {"priority": priority})
        return EnqueueResult(entry=entry, created=True, message=message)

    def submit_operation(
        self,
        operation: str,
        *,
        priority: int = 0,
        issue_id: str | None = None,
    ) -> EnqueueResult:
        """Mark an operation merge-eligible and put it on the queue."""

        current = self._machine.get(operation)
        if current.phase != Phase.PENDING_MERGE:
            self._machine.transition(operation, Phase.PENDING_MERGE)
        elif not current.merge_queued:
            self._machine.update(operation, merge_queued=True)
        return self.enqueue(
            operation,
            priority=priority,
            merge_kind=MergeKind.OPERATION,
            issue_id=issue_id,
        )

    def update(self, operation: str, status: EntryStatus | str | None = None, **fields: Any) -> QueueEntry | None:
        with self._locked() as document:
            entry = next(
                (item for item in reversed(document.entries) if item.operation == operation),
                None,
            )
            if entry is None:
                return None
            if status is not None:
                entry.status = EntryStatus(status)
            for key, value in fields.items():
                if key not in QueueEntry.model_fields:
                    raise QueueError(f"Unknown queue entry field '{key}'")
                setattr(entry, key, value)
            entry.updated_at = self.now()
            return entry.model_copy()

    def remove(self, operation: str) -> bool:
        with self._locked() as document:
            before = len(document.entries)
            document.entries = [entry for entry in document.entries if entry.operation != operation]
            return len(document.entries) != before

    def prune(
        self,
        *,
        now: datetime | None = None,
        retention: timedelta | None = None,
        dry_run: bool = False,
    ) -> list[QueueEntry]:
        """Drop terminal and resumed entries last touched before the retention window."""

        moment = now or self._clock()
        window = retention if retention is not None else timedelta(hours=self._settings.prune_retention_hours)
        cutoff = moment - window

        def expired(entry: QueueEntry) -> bool:
            if not entry.is_prunable:
                return False
            stamp = entry.updated_at or entry.enqueued_at
            try:
                return parse_timestamp(stamp) < cutoff
            except ValueError:
                return False

        if dry_run:
            return [entry for entry in self.load().entries if expired(entry)]

        with self._locked() as document:
            removed = [entry for entry in document.entries if expired(entry)]
            document.entries = [entry for entry in document.entries if not expired(entry)]
        if removed:
            logger.info("Pruned queue entries", extra={"count": len(removed)})
        return removed


__all__ = ["MergeQueue", "QueueError", "QueueLockTimeout"]
