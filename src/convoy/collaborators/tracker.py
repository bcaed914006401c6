"""Issue tracker adapter around the ``wk`` command line."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)


class TrackerError(CommandError):
    """Raised when the tracker rejects a command or returns unreadable output."""


@dataclass(slots=True)
class TrackerItem:
    id: str
    title: str = ""
    status: str = "todo"
    type: str = ""
    labels: list[str] = field(default_factory=list)
    assignee: str | None = None
    notes: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TrackerItem":
        notes = payload.get("notes") or []
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            status=str(payload.get("status") or "todo"),
            type=str(payload.get("type") or payload.get("issue_type") or ""),
            labels=[str(label) for label in payload.get("labels") or []],
            assignee=payload.get("assignee"),
            notes=[note.get("content", "") if isinstance(note, dict) else str(note) for note in notes],
        )


class Tracker(Protocol):
    async def list_items(
        self,
        *,
        type: str | None = None,
        status: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
    ) -> list[TrackerItem]: ...

    async def start(self, item_id: str) -> None: ...

    async def done(self, item_id: str) -> None: ...

    async def reopen(self, item_id: str) -> None: ...

    async def assign(self, item_id: str, owner: str) -> None: ...

    async def note(self, item_id: str, text: str) -> None: ...

    async def show(self, item_id: str) -> TrackerItem: ...


class WkTracker:
    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner("wk")

    async def _check(self, *args: str) -> str:
        result = await self._runner.run(*args)
        if not result.ok:
            raise TrackerError(f"wk {' '.join(args)} failed ({result.describe()})", result)
        return result.stdout

    async def _json(self, *args: str) -> Any:
        output = await self._check(*args, "-o", "json")
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"wk {' '.join(args)} returned invalid JSON: {exc}") from exc

    async def list_items(
        self,
        *,
        type: str | None = None,
        status: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
    ) -> list[TrackerItem]:
        args = ["list"]
        for flag, value in (("--type", type), ("--label", label), ("--status", status), ("--assignee", assignee)):
            if value is not None:
                args.extend([flag, value])
        payload = await self._json(*args)
        if payload is None:
            return []
        if isinstance(payload, dict):
            payload = payload.get("issues") or payload.get("items") or []
        return [TrackerItem.from_payload(item) for item in payload]

    async def start(self, item_id: str) -> None:
        await self._check("start", item_id)

    async def done(self, item_id: str) -> None:
        await self._check("done", item_id)

    async def reopen(self, item_id: str) -> None:
        await self._check("reopen", item_id)

    async def assign(self, item_id: str, owner: str) -> None:
        await self._check("edit", item_id, "assignee", owner)

    async def note(self, item_id: str, text: str) -> None:
        await self._check("note", item_id, text)

    async def show(self, item_id: str) -> TrackerItem:
        payload = await self._json("show", item_id)
        if not isinstance(payload, dict):
            raise TrackerError(f"wk show {item_id} returned no item")
        return TrackerItem.from_payload(payload)


class FakeTracker:
    """Dictionary-backed tracker that records every mutating call."""

    def __init__(self, items: list[TrackerItem] | None = None) -> None:
        self.items: dict[str, TrackerItem] = {item.id: item for item in items or []}
        self.calls: list[tuple[str, ...]] = []
        self.fail_queries = False

    def add(self, item_id: str, **fields: Any) -> TrackerItem:
        item = TrackerItem(id=item_id, **fields)
        self.items[item_id] = item
        return item

    def _get(self, item_id: str) -> TrackerItem:
        try:
            return self.items[item_id]
        except KeyError as exc:
            raise TrackerError(f"Unknown issue {item_id}") from exc

    async def list_items(
        self,
        *,
        type: str | None = None,
        status: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
    ) -> list[TrackerItem]:
        if self.fail_queries:
            raise TrackerError("wk list failed (exit 1: database locked)")
        return [
            item
            for item in self.items.values()
            if (type is None or item.type == type)
            and (status is None or item.status == status)
            and (label is None or label in item.labels)
            and (assignee is None or item.assignee == assignee)
        ]

    async def start(self, item_id: str) -> None:
        self.calls.append(("start", item_id))
        self._get(item_id).status = "in_progress"

    async def done(self, item_id: str) -> None:
        self.calls.append(("done", item_id))
        self._get(item_id).status = "done"

    async def reopen(self, item_id: str) -> None:
        self.calls.append(("reopen", item_id))
        self._get(item_id).status = "todo"

    async def assign(self, item_id: str, owner: str) -> None:
        self.calls.append(("assign", item_id, owner))
        self._get(item_id).assignee = None if owner == "none" else owner

    async def note(self, item_id: str, text: str) -> None:
        self.calls.append(("note", item_id, text))
        self._get(item_id).notes.append(text)

    async def show(self, item_id: str) -> TrackerItem:
        return self._get(item_id)


__all__ = ["FakeTracker", "Tracker", "TrackerError", "TrackerItem", "WkTracker"]
