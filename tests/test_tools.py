from __future__ import annotations

import pytest

from convoy.mergeq import EntryStatus
from convoy.state import DependencyNotMergedError, Phase
from convoy.tools import register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


@pytest.fixture
def server() -> StubServer:
    return StubServer()


@pytest.fixture
def handles(server, runtime):
    return register_tools(server, runtime=runtime)


def _complete(runtime, name: str, **fields) -> None:
    runtime.machine.create(name, **fields)
    for phase in (Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED):
        runtime.machine.transition(name, phase)


def test_all_tools_are_registered(server, handles) -> None:
    assert sorted(server._tools) == [
        "cancel_operation",
        "enqueue_merge",
        "hold_operation",
        "list_operations",
        "operation_status",
        "prune_queue",
        "resume_operation",
    ]
    assert handles.operation_status.name == "operation_status"


def test_operation_status_reports_queue_and_events(handles, runtime) -> None:
    runtime.machine.create("a")
    _complete(runtime, "b", after="a", branch="feature/b")
    runtime.queue.submit_operation("b")

    status = handles.operation_status.fn(name="b", events=2)

    assert status["phase"] == "pending_merge"
    assert status["blocked_by"] == "a"
    assert status["queue"]["status"] == "pending"
    assert len(status["events"]) == 2
    assert status["events"][-1]["event"] == "merge:queued"


def test_list_operations_filters(handles, runtime) -> None:
    runtime.machine.create("auth")
    runtime.machine.create("fix-app-1", "fix")
    _complete(runtime, "billing")

    assert [op["name"] for op in handles.list_operations.fn(kind="fix")] == ["fix-app-1"]
    assert [op["name"] for op in handles.list_operations.fn(phase="completed")] == ["billing"]
    assert len(handles.list_operations.fn()) == 3


def test_hold_then_resume_respects_dependencies(handles, runtime) -> None:
    runtime.machine.create("a")
    runtime.machine.create("b", after="a")

    held = handles.hold_operation.fn(name="b")
    assert held["held"] is True
    assert held["changed"] is True
    assert handles.hold_operation.fn(name="b")["changed"] is False

    with pytest.raises(DependencyNotMergedError):
        handles.resume_operation.fn(name="b")
    resumed = handles.resume_operation.fn(name="b", force=True)
    assert resumed["held"] is False


def test_cancel_drops_active_queue_entry(handles, runtime) -> None:
    _complete(runtime, "auth", branch="feature/auth")
    runtime.queue.submit_operation("auth")

    cancelled = handles.cancel_operation.fn(name="auth")

    assert cancelled["phase"] == "cancelled"
    entry = runtime.queue.find("auth")
    assert entry.status == EntryStatus.FAILED
    assert entry.reason == "cancelled"


def test_enqueue_merge_for_operations_and_branches(handles, runtime) -> None:
    _complete(runtime, "auth", branch="feature/auth")
    runtime.machine.create("draft")

    result = handles.enqueue_merge.fn(name="auth", priority=2, issue_id="app-7")
    assert result["created"] is True
    assert result["entry"]["merge_kind"] == "operation"
    assert result["entry"]["issue_id"] == "app-7"
    assert runtime.machine.get("auth").phase == Phase.PENDING_MERGE

    again = handles.enqueue_merge.fn(name="auth")
    assert again["created"] is False
    assert again["message"] == "already in queue"

    branch = handles.enqueue_merge.fn(name="fix/app-3")
    assert branch["entry"]["merge_kind"] == "branch"

    with pytest.raises(ValueError, match="only completed work"):
        handles.enqueue_merge.fn(name="draft")


def test_prune_queue_dry_run(handles, runtime) -> None:
    runtime.queue.enqueue("fix/app-1")
    runtime.queue.update("fix/app-1", EntryStatus.COMPLETED)

    preview = handles.prune_queue.fn(dry_run=True)

    assert preview == {"dry_run": True, "count": 0, "operations": []}
    assert len(runtime.queue.entries()) == 1
