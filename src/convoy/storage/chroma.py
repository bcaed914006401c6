"""Audit trail for alerts and merge outcomes, kept in a chromadb collection.

Every record is one document in the ``convoy_events`` collection. Records are
grouped into streams (``alerts::<operation>`` and ``merge::<operation>``) and
numbered per stream so that events sharing a timestamp keep their order.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

from ..timeutil import utc_now
from .models import AlertRecord, MergeRecord

ALERT_EVENT = "alert"
MERGE_EVENT = "merge_outcome"

_SCALARS = (str, int, float, bool)


class ChromaUnavailableError(RuntimeError):
    """Raised when the audit collection cannot be opened."""


class CollectionProtocol(Protocol):
    def add(self, *, documents: Iterable[str], metadatas: Iterable[dict[str, Any]], ids: Iterable[str]) -> None: ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]: ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol: ...


@dataclass(slots=True)
class ChromaEvent:
    id: str
    stream: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def payload(self) -> dict[str, Any]:
        decoded = json.loads(self.document)
        return decoded if isinstance(decoded, dict) else {"body": decoded}


def _where(*conditions: dict[str, Any]) -> dict[str, Any]:
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": list(conditions)}


def _flatten(values: dict[str, Any]) -> Iterator[tuple[str, Any]]:
    # chromadb rejects None and nested values in metadata
    for key, value in values.items():
        if value is None:
            continue
        yield key, value if isinstance(value, _SCALARS) else json.dumps(value, sort_keys=True)


def _open_persistent_client(path: Path) -> ClientProtocol:
    try:
        import chromadb
    except ImportError as exc:  # pragma: no cover - depends on installed extras
        raise ChromaUnavailableError(
            "chromadb package is not installed; install convoy[persistence] to keep an audit trail"
        ) from exc
    path.mkdir(parents=True, exist_ok=True)
    return chromadb.PersistentClient(path=str(path))


class ChromaStore:
    """Record and query convoy audit events."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "convoy_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or (lambda: _open_persistent_client(self._path))
        self._clock = clock
        self._collection: CollectionProtocol | None = None
        self._sequences: dict[str, int] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client_factory()
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        return self.collection is not None

    def _next_sequence(self, stream: str) -> int:
        if stream not in self._sequences:
            # continue numbering across restarts of the same process kind
            existing = self.collection.get(where={"stream": stream})
            self._sequences[stream] = len(existing.get("ids", []))
        self._sequences[stream] += 1
        return self._sequences[stream]

    def _events(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        rows = zip(result.get("ids", []), result.get("documents", []), result.get("metadatas", []))
        events = []
        for event_id, document, metadata in rows:
            stamp = metadata.get("timestamp")
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream=metadata.get("stream", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=datetime.fromisoformat(stamp) if isinstance(stamp, str) else self._clock(),
                )
            )
        return sorted(events, key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))

    def record_event(
        self,
        *,
        stream: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        moment = self._clock()
        envelope = dict(_flatten(metadata or {}))
        envelope.update(
            stream=stream,
            event_type=event_type,
            timestamp=moment.isoformat(),
            sequence=self._next_sequence(stream),
        )
        document = body if isinstance(body, str) else json.dumps(body)
        event_id = f"{stream}:{uuid.uuid4().hex}"
        self.collection.add(documents=[document], metadatas=[envelope], ids=[event_id])
        return ChromaEvent(event_id, stream, event_type, document, envelope, moment)

    def fetch_events(self, stream: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self._events(self.collection.get(where={"stream": stream}, limit=limit))

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Return events matching ``filters`` whose text contains ``query``.

        Matching is a case-insensitive substring test over the document and the
        metadata values. No embedding search is involved.
        """

        events = self._events(self.collection.get(where=filters, limit=limit))
        if query:
            needle = query.lower()
            haystacks = ((event, " ".join([event.document, *map(str, event.metadata.values())])) for event in events)
            events = [event for event, text in haystacks if needle in text.lower()]
        return events[:limit] if limit else events

    def record_alert(
        self,
        *,
        kind: str,
        message: str,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AlertRecord:
        details = details or {}
        event = self.record_event(
            stream=f"alerts::{operation or 'global'}",
            event_type=ALERT_EVENT,
            body={"kind": kind, "message": message, "operation": operation, "details": details},
            metadata={"kind": kind, "operation": operation},
        )
        return AlertRecord(kind, message, operation, event.timestamp, details)

    def list_alerts(
        self,
        *,
        operation: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[AlertRecord]:
        """Alerts oldest first; ``limit`` keeps the most recent ones."""

        conditions = [{"event_type": ALERT_EVENT}]
        if operation:
            conditions.append({"operation": operation})
        if kind:
            conditions.append({"kind": kind})
        alerts = []
        for event in self.search_events(filters=_where(*conditions)):
            payload = event.payload()
            alerts.append(
                AlertRecord(
                    kind=payload.get("kind", ""),
                    message=payload.get("message", ""),
                    operation=payload.get("operation"),
                    raised_at=event.timestamp,
                    details=payload.get("details") or {},
                )
            )
        return alerts[-limit:] if limit else alerts

    def record_merge(
        self,
        *,
        operation: str,
        outcome: str,
        reason: str | None = None,
        merge_commit: str | None = None,
    ) -> MergeRecord:
        event = self.record_event(
            stream=f"merge::{operation}",
            event_type=MERGE_EVENT,
            body={"operation": operation, "outcome": outcome, "reason": reason, "merge_commit": merge_commit},
            metadata={"operation": operation, "outcome": outcome},
        )
        return MergeRecord(operation, outcome, reason, merge_commit, event.timestamp)

    def list_merges(self, operation: str | None = None) -> list[MergeRecord]:
        conditions = [{"event_type": MERGE_EVENT}]
        if operation:
            conditions.append({"operation": operation})
        merges = []
        for event in self.search_events(filters=_where(*conditions)):
            payload = event.payload()
            merges.append(
                MergeRecord(
                    operation=payload.get("operation", event.metadata.get("operation", "")),
                    outcome=payload.get("outcome", "unknown"),
                    reason=payload.get("reason"),
                    merge_commit=payload.get("merge_commit"),
                    recorded_at=event.timestamp,
                )
            )
        return merges


__all__ = ["ALERT_EVENT", "ChromaEvent", "ChromaStore", "ChromaUnavailableError", "MERGE_EVENT"]
