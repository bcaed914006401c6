"""Durable per-operation records and their append-only event logs."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from ..timeutil import Clock, format_timestamp, utc_now
from .models import SCHEMA_VERSION, Operation, Phase

logger = logging.getLogger(__name__)

EVENT_LOG_MAX_BYTES = 100_000
EVENT_LOG_BACKUPS = 3


class StateError(RuntimeError):
    """Base class for state store errors."""


class OperationNotFoundError(StateError):
    """Raised when no record exists for an operation name."""


class OperationExistsError(StateError):
    """Raised when creating an operation whose name is already taken."""


@dataclass(slots=True)
class OperationEvent:
    timestamp: str
    event: str
    details: dict[str, Any] = field(default_factory=dict)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temporary sibling and rename it over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StateStore:
    """File-backed store with one ``state.json`` per operation.

    Writers replace the record atomically, so readers never need a lock.
    """

    def __init__(self, operations_dir: Path, *, clock: Clock | None = None) -> None:
        self._root = Path(operations_dir)
        self._clock = clock or utc_now

    @property
    def root(self) -> Path:
        return self._root

    def now(self) -> str:
        return format_timestamp(self._clock())

    def operation_dir(self, name: str) -> Path:
        return self._root / name

    def state_file(self, name: str) -> Path:
        return self.operation_dir(name) / "state.json"

    def events_file(self, name: str) -> Path:
        return self.operation_dir(name) / "events.jsonl"

    def exists(self, name: str) -> bool:
        return self.state_file(name).is_file()

    def names(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(path.parent.name for path in self._root.glob("*/state.json"))

    def load(self, name: str) -> Operation:
        path = self.state_file(name)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise OperationNotFoundError(f"Operation '{name}' not found") from exc
        except json.JSONDecodeError as exc:
            raise StateError(f"Corrupt state record for '{name}': {exc}") from exc

        document, migrations = self._migrate(document)
        try:
            operation = Operation.model_validate(document)
        except ValidationError as exc:
            raise StateError(f"Invalid state record for '{name}': {exc}") from exc

        if migrations:
            self.save(operation)
            for note in migrations:
                self.append_event(name, "schema:migrated", {"migration": note})
        return operation

    def get(self, name: str) -> Operation | None:
        try:
            return self.load(name)
        except OperationNotFoundError:
            return None

    def list_operations(self) -> list[Operation]:
        operations: list[Operation] = []
        for name in self.names():
            try:
                operations.append(self.load(name))
            except StateError as exc:
                logger.warning("Skipping unreadable operation", extra={"operation": name, "error": str(exc)})
        return operations

    def create(self, operation: Operation) -> Operation:
        if self.exists(operation.name):
            raise OperationExistsError(f"Operation '{operation.name}' already exists")
        timestamp = self.now()
        created = operation.model_copy(
            update={
                "created_at": operation.created_at or timestamp,
                "updated_at": timestamp,
            }
        )
        self.save(created)
        return created

    def save(self, operation: Operation) -> None:
        text = json.dumps(operation.to_document(), indent=2, sort_keys=True)
        atomic_write_text(self.state_file(operation.name), text + "\n")

    def update(self, name: str, **fields: Any) -> Operation:
        """Apply field updates to a record and write it back atomically."""

        current = self.load(name)
        document = current.to_document()
        document.update(fields)
        document["updated_at"] = self.now()
        try:
            updated = Operation.model_validate(document)
        except ValidationError as exc:
            raise StateError(f"Invalid update for '{name}': {exc}") from exc
        self.save(updated)
        return updated

    def read_field(self, name: str, field_name: str, default: Any = None) -> Any:
        operation = self.get(name)
        if operation is None:
            return default
        value = getattr(operation, field_name, default)
        return default if value is None else value

    def delete(self, name: str) -> None:
        directory = self.operation_dir(name)
        if directory.exists():
            shutil.rmtree(directory)

    def append_event(self, name: str, event: str, details: dict[str, Any] | None = None) -> OperationEvent:
        record = OperationEvent(timestamp=self.now(), event=event, details=dict(details or {}))
        path = self.events_file(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed(path)
        line = json.dumps({"timestamp": record.timestamp, "event": record.event, "details": record.details})
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        return record

    def read_events(self, name: str, *, limit: int | None = None) -> list[OperationEvent]:
        events = list(self._iter_events(name))
        if limit is not None and limit > 0:
            events = events[-limit:]
        return events

    def _iter_events(self, name: str) -> Iterator[OperationEvent]:
        base = self.events_file(name)
        paths = [base.with_name(f"{base.name}.{index}") for index in range(EVENT_LOG_BACKUPS, 0, -1)]
        paths.append(base)
        for path in paths:
            if not path.exists():
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                yield OperationEvent(
                    timestamp=payload.get("timestamp", ""),
                    event=payload.get("event", ""),
                    details=payload.get("details") or {},
                )

    @staticmethod
    def _rotate_if_needed(path: Path) -> None:
        if not path.exists() or path.stat().st_size < EVENT_LOG_MAX_BYTES:
            return
        for index in range(EVENT_LOG_BACKUPS, 0, -1):
            source = path if index == 1 else path.with_name(f"{path.name}.{index - 1}")
            target = path.with_name(f"{path.name}.{index}")
            if source.exists():
                os.replace(source, target)

    def _migrate(self, document: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        version = int(document.get("_schema_version", 0) or 0)
        notes: list[str] = []
        if version >= SCHEMA_VERSION:
            return document, notes

        migrated = dict(document)
        if version == 0:
            migrated["_schema_version"] = 1
            notes.append("v0 -> v1")
            version = 1

        if version == 1:
            if migrated.get("phase") == "blocked":
                restored = migrated.get("blocked_phase") or Phase.INIT.value
                migrated["phase"] = restored
            migrated.pop("blocked_phase", None)
            migrated.pop("eager", None)
            migrated["_schema_version"] = SCHEMA_VERSION
            notes.append("v1 -> v2")

        return migrated, notes


__all__ = [
    "EVENT_LOG_BACKUPS",
    "EVENT_LOG_MAX_BYTES",
    "OperationEvent",
    "OperationExistsError",
    "OperationNotFoundError",
    "StateError",
    "StateStore",
    "atomic_write_text",
]
