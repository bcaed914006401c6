"""Operation record and lifecycle rules."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = 2


class Phase(str, Enum):
    INIT = "init"
    PLANNED = "planned"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PENDING_MERGE = "pending_merge"
    MERGED = "merged"
    FAILED = "failed"
    CONFLICT = "conflict"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


class OperationKind(str, Enum):
    PLAN = "plan"
    FEATURE = "feature"
    FIX = "fix"
    CHORE = "chore"
    ROADMAP = "roadmap"
    GOAL = "goal"


TERMINAL_PHASES = frozenset({Phase.MERGED, Phase.CANCELLED})
MERGEABLE_PHASES = frozenset({Phase.COMPLETED, Phase.PENDING_MERGE})
RECOVERABLE_PHASES = frozenset({Phase.FAILED, Phase.INTERRUPTED, Phase.CANCELLED})

# Forward edges of the lifecycle.
FORWARD_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.INIT: frozenset({Phase.PLANNED, Phase.FAILED}),
    Phase.PLANNED: frozenset({Phase.QUEUED, Phase.EXECUTING, Phase.FAILED}),
    Phase.QUEUED: frozenset({Phase.EXECUTING, Phase.FAILED}),
    Phase.EXECUTING: frozenset({Phase.COMPLETED, Phase.FAILED, Phase.INTERRUPTED}),
    Phase.COMPLETED: frozenset({Phase.PENDING_MERGE, Phase.MERGED, Phase.FAILED}),
    Phase.PENDING_MERGE: frozenset({Phase.MERGED, Phase.CONFLICT, Phase.FAILED}),
    Phase.CONFLICT: frozenset({Phase.PENDING_MERGE, Phase.FAILED}),
    Phase.FAILED: frozenset(),
    Phase.INTERRUPTED: frozenset(),
    Phase.MERGED: frozenset(),
    Phase.CANCELLED: frozenset(),
}

# Edges that send a failed or interrupted operation back to work.
RECOVERY_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.FAILED: frozenset({Phase.INIT, Phase.PLANNED, Phase.QUEUED}),
    Phase.INTERRUPTED: frozenset({Phase.INIT, Phase.PLANNED, Phase.QUEUED}),
}


def allowed_targets(phase: Phase) -> frozenset[Phase]:
    return FORWARD_TRANSITIONS[phase] | RECOVERY_TRANSITIONS.get(phase, frozenset())


def is_allowed(current: Phase, target: Phase) -> bool:
    return target in allowed_targets(current)


def reaches(start: Phase, goal: Phase) -> bool:
    """Return True when ``goal`` is reachable from ``start`` over forward edges."""

    seen: set[Phase] = set()
    frontier = [start]
    while frontier:
        phase = frontier.pop()
        for nxt in FORWARD_TRANSITIONS[phase]:
            if nxt == goal:
                return True
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return False


class Operation(BaseModel):
    """Durable record for one unit of trackable work."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    schema_version: int = Field(default=SCHEMA_VERSION, alias="_schema_version")
    name: str
    kind: OperationKind = OperationKind.FEATURE
    phase: Phase = Phase.INIT
    machine: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    held: bool = False
    held_at: str | None = None
    completed_at: str | None = None
    merged_at: str | None = None
    cancelled_at: str | None = None
    worktree: str | None = None
    branch: str | None = None
    session: str | None = None
    after: str | None = None
    merge_queued: bool = False
    merge_status: str | None = None
    merge_error: str | None = None
    merge_commit: str | None = None
    merge_resumed: bool = False
    worktree_missing: bool = False
    epic_id: str | None = None
    plan_file: str | None = None
    error: str | None = None
    prompt: str | None = None
    labels: list[str] = Field(default_factory=list)
    issue_ids: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Operation name must not be empty")
        if "/" in normalized or normalized in {".", ".."}:
            raise ValueError(f"Invalid operation name '{value}'")
        return normalized

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "FORWARD_TRANSITIONS",
    "MERGEABLE_PHASES",
    "Operation",
    "OperationKind",
    "Phase",
    "RECOVERABLE_PHASES",
    "RECOVERY_TRANSITIONS",
    "SCHEMA_VERSION",
    "TERMINAL_PHASES",
    "allowed_targets",
    "is_allowed",
    "reaches",
]
