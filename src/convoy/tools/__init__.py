"""Tool registration for the convoy control server."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..mergeq.models import EntryStatus, QueueEntry
from ..runtime import Runtime
from ..state.models import MERGEABLE_PHASES, Operation, Phase

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ControlHandles:
    operation_status: Any
    list_operations: Any
    hold_operation: Any
    resume_operation: Any
    cancel_operation: Any
    enqueue_merge: Any
    prune_queue: Any


def operation_summary(operation: Operation) -> dict[str, Any]:
    return {
        "name": operation.name,
        "kind": operation.kind.value,
        "phase": operation.phase.value,
        "held": operation.held,
        "after": operation.after,
        "branch": operation.branch,
        "worktree": operation.worktree,
        "merge_queued": operation.merge_queued,
        "merge_status": operation.merge_status,
        "merge_commit": operation.merge_commit,
        "error": operation.error or operation.merge_error,
        "updated_at": operation.updated_at,
    }


def entry_summary(entry: QueueEntry) -> dict[str, Any]:
    return entry.model_dump(mode="json")


def register_tools(server: FastMCP, *, runtime: Runtime) -> ControlHandles:
    """Register the operator tools; they are the only writers besides the daemons."""

    machine = runtime.machine
    store = runtime.store
    queue = runtime.queue

    def _operation_status(name: str, events: int = 10, context: Context | None = None) -> dict[str, Any]:
        operation = machine.get(name)
        payload = operation_summary(operation)
        payload["blocked_by"] = machine.blocker(name)
        entry = queue.find(name)
        payload["queue"] = entry_summary(entry) if entry is not None else None
        payload["events"] = [asdict(event) for event in store.read_events(name, limit=events)]
        return payload

    def _list_operations(
        phase: str | None = None,
        kind: str | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        wanted_phase = Phase(phase) if phase else None
        operations = store.list_operations()
        return [
            operation_summary(operation)
            for operation in operations
            if (wanted_phase is None or operation.phase == wanted_phase)
            and (kind is None or operation.kind.value == kind)
        ]

    def _hold_operation(name: str, context: Context | None = None) -> dict[str, Any]:
        changed = machine.hold(name)
        logger.info("Hold requested", extra={"operation": name, "changed": changed})
        return {**operation_summary(machine.get(name)), "changed": changed}

    def _resume_operation(name: str, force: bool = False, context: Context | None = None) -> dict[str, Any]:
        resumed = machine.resume(name, force=force)
        return operation_summary(resumed)

    def _cancel_operation(name: str, context: Context | None = None) -> dict[str, Any]:
        cancelled = machine.cancel(name)
        entry = queue.find(name)
        if entry is not None and entry.is_active:
            queue.update(name, EntryStatus.FAILED, reason="cancelled")
        return operation_summary(cancelled)

    def _enqueue_merge(
        name: str,
        priority: int = 0,
        issue_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        operation = store.get(name) if "/" not in name else None
        if operation is not None:
            if operation.phase not in MERGEABLE_PHASES:
                raise ValueError(
                    f"Operation '{name}' is {operation.phase.value}; only completed work can be merged"
                )
            result = queue.submit_operation(name, priority=priority, issue_id=issue_id)
        else:
            result = queue.enqueue(name, priority=priority, issue_id=issue_id)
        return {
            "created": result.created,
            "message": result.message,
            "entry": entry_summary(result.entry),
        }

    def _prune_queue(dry_run: bool = False, context: Context | None = None) -> dict[str, Any]:
        pruned = queue.prune(dry_run=dry_run)
        return {
            "dry_run": dry_run,
            "count": len(pruned),
            "operations": [entry.operation for entry in pruned],
        }

    tool_status = server.tool(
        name="operation_status",
        description="Show one operation with its queue entry and recent events.",
    )(_operation_status)
    tool_list = server.tool(
        name="list_operations",
        description="List operations, optionally filtered by phase or kind.",
    )(_list_operations)
    tool_hold = server.tool(
        name="hold_operation",
        description="Put an operation on hold so dependency merges do not resume it.",
    )(_hold_operation)
    tool_resume = server.tool(
        name="resume_operation",
        description="Resume a held, failed or interrupted operation; force skips the dependency check.",
    )(_resume_operation)
    tool_cancel = server.tool(
        name="cancel_operation",
        description="Cancel an operation and drop its active queue entry.",
    )(_cancel_operation)
    tool_enqueue = server.tool(
        name="enqueue_merge",
        description="Submit a completed operation or a bare branch to the merge queue.",
    )(_enqueue_merge)
    tool_prune = server.tool(
        name="prune_queue",
        description="Drop terminal queue entries older than the retention window.",
    )(_prune_queue)

    return ControlHandles(
        operation_status=tool_status,
        list_operations=tool_list,
        hold_operation=tool_hold,
        resume_operation=tool_resume,
        cancel_operation=tool_cancel,
        enqueue_merge=tool_enqueue,
        prune_queue=tool_prune,
    )


__all__ = ["ControlHandles", "entry_summary", "operation_summary", "register_tools"]
