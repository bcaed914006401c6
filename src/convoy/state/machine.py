"""Operation state machine.

Every phase change goes through :meth:`StateMachine.transition`. The method is
idempotent, because a human, the merge daemon and a worker may all race to
apply the same completion signal. Re-applying a target the operation has
already reached or passed returns False without touching the record. Only a
move from a terminal phase back to a non-terminal one, or an edge missing from
the lifecycle table, is rejected.
"""

from __future__ import annotations

import logging
import socket
from typing import Any, Iterable

from .models import (
    RECOVERABLE_PHASES,
    TERMINAL_PHASES,
    MERGEABLE_PHASES,
    Operation,
    OperationKind,
    Phase,
    is_allowed,
    reaches,
)
from .store import OperationNotFoundError, StateError, StateStore

logger = logging.getLogger(__name__)


class InvalidTransitionError(StateError):
    """Raised when a phase change is not permitted by the lifecycle rules."""


class DependencyNotMergedError(StateError):
    """Raised when resuming an operation whose ``after`` dependency has not merged."""

    def __init__(self, name: str, blocker: str) -> None:
        self.name = name
        self.blocker = blocker
        super().__init__(f"Operation '{name}' is blocked by '{blocker}' (not merged); use force to override")


class DependencyCycleError(StateError):
    """Raised when an ``after`` reference would create a cycle."""


class UnknownDependencyError(StateError):
    """Raised when an ``after`` reference names no known operation."""


class StateMachine:
    """Apply lifecycle rules to records held in a :class:`StateStore`."""

    def __init__(self, store: StateStore, *, machine_id: str | None = None) -> None:
        self._store = store
        self._machine_id = machine_id or socket.gethostname()

    @property
    def store(self) -> StateStore:
        return self._store

    def get(self, name: str) -> Operation:
        return self._store.load(name)

    def create(
        self,
        name: str,
        kind: OperationKind | str = OperationKind.FEATURE,
        *,
        after: str | None = None,
        prompt: str | None = None,
        labels: Iterable[str] = (),
        issue_ids: Iterable[str] = (),
        epic_id: str | None = None,
        plan_file: str | None = None,
        worktree: str | None = None,
        branch: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Operation:
        if after is not None:
            self._validate_after(name, after)
        operation = Operation(
            name=name,
            kind=OperationKind(kind),
            machine=self._machine_id,
            after=after,
            prompt=prompt,
            labels=list(labels),
            issue_ids=list(issue_ids),
            epic_id=epic_id,
            plan_file=plan_file,
            worktree=worktree,
            branch=branch,
            payload=dict(payload or {}),
        )
        created = self._store.create(operation)
        self._store.append_event(name, "operation:created", {"kind": created.kind.value, "after": after})
        logger.info("Created operation", extra={"operation": name, "kind": created.kind.value})
        return created

    def transition(self, name: str, target: Phase | str, **fields: Any) -> bool:
        """Move ``name`` to ``target``; return True only when the record changed."""

        target = Phase(target)
        operation = self._store.load(name)
        current = operation.phase

        if current == target:
            return False
        if current in TERMINAL_PHASES:
            if target in TERMINAL_PHASES:
                return False
            raise InvalidTransitionError(
                f"Operation '{name}' is {current.value}; cannot move back to {target.value}"
            )
        if not is_allowed(current, target):
            if reaches(target, current):
                logger.debug(
                    "Transition already superseded",
                    extra={"operation": name, "phase": current.value, "target": target.value},
                )
                return False
            raise InvalidTransitionError(
                f"Operation '{name}' cannot transition from {current.value} to {target.value}"
            )

        updates = self._side_effects(target, fields)
        self._store.update(name, phase=target, **updates)
        self._store.append_event(name, "phase:transition", {"from": current.value, "to": target.value})
        logger.info(
            "Operation transitioned",
            extra={"operation": name, "from": current.value, "to": target.value},
        )
        return True

    def _side_effects(self, target: Phase, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._store.now()
        updates: dict[str, Any] = {}
        if target == Phase.COMPLETED:
            updates["completed_at"] = now
        elif target == Phase.PENDING_MERGE:
            updates["merge_queued"] = True
        elif target == Phase.MERGED:
            updates.update(merged_at=now, merge_status="merged", merge_error=None)
        elif target == Phase.CONFLICT:
            updates["merge_status"] = "conflict"
        elif target == Phase.FAILED and "reason" in fields:
            updates["error"] = fields.pop("reason")
        updates.update(fields)
        return updates

    def mark_merged(self, name: str, *, merge_commit: str | None = None) -> bool:
        fields: dict[str, Any] = {}
        if merge_commit:
            fields["merge_commit"] = merge_commit
        return self.transition(name, Phase.MERGED, **fields)

    def update(self, name: str, **fields: Any) -> Operation:
        """Write bookkeeping fields that are not phase changes."""

        if "phase" in fields:
            raise StateError("Use transition() to change phases")
        return self._store.update(name, **fields)

    def hold(self, name: str) -> bool:
        operation = self._store.load(name)
        if operation.is_terminal:
            raise InvalidTransitionError(f"Operation '{name}' is {operation.phase.value}; cannot hold")
        if operation.held:
            return False
        self._store.update(name, held=True, held_at=self._store.now())
        self._store.append_event(name, "hold:set", {})
        logger.info("Operation held", extra={"operation": name})
        return True

    def clear_hold(self, name: str) -> bool:
        operation = self._store.load(name)
        if not operation.held:
            return False
        self._store.update(name, held=False, held_at=None)
        self._store.append_event(name, "hold:cleared", {})
        return True

    def is_held(self, name: str) -> bool:
        return bool(self._store.read_field(name, "held", False))

    def resume_phase(self, operation: Operation) -> Phase:
        if operation.epic_id:
            return Phase.QUEUED
        if operation.plan_file:
            return Phase.PLANNED
        return Phase.INIT

    def resume(self, name: str, *, force: bool = False) -> Operation:
        """Clear the hold and return a stopped operation to work."""

        operation = self._store.load(name)
        if operation.phase == Phase.MERGED:
            raise InvalidTransitionError(f"Operation '{name}' is merged; nothing to resume")

        blocker = self.blocker(name)
        if blocker is not None and not force:
            raise DependencyNotMergedError(name, blocker)

        updates: dict[str, Any] = {"held": False, "held_at": None}
        previous = operation.phase
        if previous in RECOVERABLE_PHASES:
            updates["phase"] = self.resume_phase(operation)
            updates["error"] = None
            if previous == Phase.CANCELLED:
                updates["cancelled_at"] = None
        resumed = self._store.update(name, **updates)
        self._store.append_event(
            name,
            "operation:resumed",
            {"from": previous.value, "to": resumed.phase.value, "force": force, "blocker": blocker},
        )
        logger.info(
            "Operation resumed",
            extra={"operation": name, "phase": resumed.phase.value, "force": force},
        )
        return resumed

    def cancel(self, name: str) -> Operation:
        operation = self._store.load(name)
        if operation.is_terminal:
            raise InvalidTransitionError(f"Operation '{name}' is already {operation.phase.value}")
        cancelled = self._store.update(
            name,
            phase=Phase.CANCELLED,
            cancelled_at=self._store.now(),
            held=False,
            held_at=None,
        )
        self._store.append_event(
            name,
            "phase:transition",
            {"from": operation.phase.value, "to": Phase.CANCELLED.value},
        )
        logger.info("Operation cancelled", extra={"operation": name})
        return cancelled

    def set_after(self, name: str, after: str | None) -> Operation:
        if after is not None:
            self._validate_after(name, after)
        updated = self._store.update(name, after=after)
        self._store.append_event(name, "dependency:set", {"after": after})
        return updated

    def _validate_after(self, name: str, after: str) -> None:
        if after == name:
            raise DependencyCycleError(f"Operation '{name}' cannot depend on itself")
        if not self._store.exists(after):
            raise UnknownDependencyError(f"Dependency '{after}' of '{name}' does not exist")
        seen = {name}
        current: str | None = after
        while current is not None:
            if current in seen:
                raise DependencyCycleError(f"Dependency '{after}' of '{name}' creates a cycle")
            seen.add(current)
            current = self._store.read_field(current, "after")

    def blocker(self, name: str) -> str | None:
        """Return the first operation in the ``after`` chain that has not merged."""

        seen = {name}
        current = self._store.read_field(name, "after")
        while current is not None and current not in seen:
            seen.add(current)
            dependency = self._store.get(current)
            if dependency is None:
                # Pruned records count as merged history.
                return None
            if dependency.phase != Phase.MERGED:
                return current
            current = dependency.after
        return None

    def is_blocked(self, name: str) -> bool:
        operation = self._store.load(name)
        if operation.phase == Phase.EXECUTING or operation.is_terminal:
            return False
        return self.blocker(name) is not None

    def dependents(self, name: str) -> list[Operation]:
        return [operation for operation in self._store.list_operations() if operation.after == name]

    def dependents_to_resume(self, name: str) -> list[Operation]:
        """Return operations unblocked by ``name`` merging, skipping held ones."""

        ready: list[Operation] = []
        for dependent in self.dependents(name):
            if dependent.is_terminal:
                continue
            if dependent.held:
                self._store.append_event(dependent.name, "unblock:held", {"after": name})
                logger.info(
                    "Dependency merged but operation is held",
                    extra={"operation": dependent.name, "after": name},
                )
                continue
            if self.blocker(dependent.name) is not None:
                continue
            self._store.append_event(dependent.name, "unblock:ready", {"after": name})
            ready.append(dependent)
        return ready

    def merge_ready_reason(self, name: str) -> str | None:
        """Return the state-level reason an operation cannot merge, or None."""

        operation = self._store.load(name)
        if not operation.merge_queued:
            return "merge_queued:unset"
        if operation.phase not in MERGEABLE_PHASES:
            return f"phase:{operation.phase.value}"
        return None


__all__ = [
    "DependencyCycleError",
    "DependencyNotMergedError",
    "InvalidTransitionError",
    "OperationNotFoundError",
    "StateMachine",
    "UnknownDependencyError",
]
