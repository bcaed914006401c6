from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from convoy.collaborators.git import FakeGit
from convoy.collaborators.launcher import FakeLauncher
from convoy.collaborators.sessions import FakeSessionHost
from convoy.collaborators.tracker import FakeTracker
from convoy.config import ConvoySettings, load_settings
from convoy.runtime import Runtime, build_runtime
from convoy.storage import ChromaStore


class FakeLiveness:
    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = set(alive) if alive is not None else {os.getpid()}

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


class TickingClock:
    """Advance one second per call so timestamps are strictly ordered."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


@pytest.fixture
def settings(tmp_path: Path) -> ConvoySettings:
    root = tmp_path / "project"
    root.mkdir()
    return load_settings(
        project_root=root,
        project_name="app",
        state_dir=tmp_path / "state",
        lock_retry_delay=0.0,
    )


@pytest.fixture
def liveness() -> FakeLiveness:
    return FakeLiveness()


@pytest.fixture
def make_liveness():
    return FakeLiveness


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def audit_store(tmp_path: Path) -> ChromaStore:
    client = StubClient()
    return ChromaStore(
        tmp_path / "chroma",
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


@pytest.fixture
def git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def sessions() -> FakeSessionHost:
    return FakeSessionHost()


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def runtime(settings, git, sessions, tracker, launcher, liveness, clock) -> Runtime:
    return build_runtime(
        settings,
        git=git,
        sessions=sessions,
        tracker=tracker,
        launcher=launcher,
        open_audit=False,
        liveness=liveness,
        clock=clock,
    )
