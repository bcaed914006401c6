from __future__ import annotations

from pathlib import Path

import pytest

from convoy.state import (
    DependencyCycleError,
    DependencyNotMergedError,
    InvalidTransitionError,
    Phase,
    StateError,
    StateMachine,
    StateStore,
    UnknownDependencyError,
)


@pytest.fixture
def machine(tmp_path: Path, clock) -> StateMachine:
    return StateMachine(StateStore(tmp_path / "operations", clock=clock), machine_id="host-1")


def _drive(machine: StateMachine, name: str, *phases: Phase) -> None:
    for phase in phases:
        assert machine.transition(name, phase)


def test_forward_lifecycle_sets_side_fields(machine: StateMachine) -> None:
    machine.create("auth", "feature", branch="feature/auth")
    _drive(machine, "auth", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.PENDING_MERGE)

    operation = machine.get("auth")
    assert operation.machine == "host-1"
    assert operation.completed_at is not None
    assert operation.merge_queued is True

    assert machine.mark_merged("auth", merge_commit="abc123")
    merged = machine.get("auth")
    assert merged.phase == Phase.MERGED
    assert merged.merge_status == "merged"
    assert merged.merge_commit == "abc123"
    assert merged.merged_at is not None


def test_transition_is_idempotent(machine: StateMachine) -> None:
    machine.create("auth")
    _drive(machine, "auth", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED)
    before = machine.get("auth")

    assert machine.transition("auth", Phase.COMPLETED) is False
    # A late "executing" signal is already superseded by completion.
    assert machine.transition("auth", Phase.EXECUTING) is False
    assert machine.get("auth").updated_at == before.updated_at

    assert machine.mark_merged("auth")
    assert machine.mark_merged("auth") is False
    assert machine.transition("auth", Phase.CANCELLED) is False


def test_terminal_phase_cannot_go_back(machine: StateMachine) -> None:
    machine.create("auth")
    _drive(machine, "auth", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.MERGED)

    with pytest.raises(InvalidTransitionError):
        machine.transition("auth", Phase.EXECUTING)


def test_missing_edge_is_rejected(machine: StateMachine) -> None:
    machine.create("auth")

    with pytest.raises(InvalidTransitionError):
        machine.transition("auth", Phase.MERGED)


def test_failed_transition_records_reason(machine: StateMachine) -> None:
    machine.create("auth")
    _drive(machine, "auth", Phase.PLANNED, Phase.EXECUTING)

    machine.transition("auth", Phase.FAILED, reason="agent gave up")

    assert machine.get("auth").error == "agent gave up"


def test_update_refuses_phase_changes(machine: StateMachine) -> None:
    machine.create("auth")

    with pytest.raises(StateError):
        machine.update("auth", phase=Phase.MERGED)


def test_hold_and_clear(machine: StateMachine) -> None:
    machine.create("auth")

    assert machine.hold("auth")
    assert machine.hold("auth") is False
    assert machine.is_held("auth")
    assert machine.clear_hold("auth")
    assert not machine.is_held("auth")


def test_resume_returns_to_phase_by_record_shape(machine: StateMachine) -> None:
    machine.create("plain")
    machine.create("planned", plan_file="plans/planned.md")
    machine.create("epic", plan_file="plans/epic.md", epic_id="app-9")
    for name in ("plain", "planned", "epic"):
        _drive(machine, name, Phase.PLANNED, Phase.EXECUTING, Phase.FAILED)

    assert machine.resume("plain").phase == Phase.INIT
    assert machine.resume("planned").phase == Phase.PLANNED
    resumed = machine.resume("epic")
    assert resumed.phase == Phase.QUEUED
    assert resumed.error is None


def test_resume_after_dependency_scenario(machine: StateMachine) -> None:
    machine.create("a")
    machine.create("b", after="a")
    machine.hold("b")

    with pytest.raises(DependencyNotMergedError) as excinfo:
        machine.resume("b")
    assert excinfo.value.blocker == "a"
    assert machine.is_held("b")

    forced = machine.resume("b", force=True)
    assert forced.held is False

    machine.hold("b")
    _drive(machine, "a", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.MERGED)
    assert machine.resume("b").held is False


def test_merged_operation_cannot_resume(machine: StateMachine) -> None:
    machine.create("a")
    _drive(machine, "a", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.MERGED)

    with pytest.raises(InvalidTransitionError):
        machine.resume("a")


def test_blocker_walks_the_chain(machine: StateMachine) -> None:
    machine.create("a")
    machine.create("b", after="a")
    machine.create("c", after="b")
    _drive(machine, "b", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.MERGED)

    assert machine.blocker("c") == "a"
    assert machine.is_blocked("c")


def test_after_validation(machine: StateMachine) -> None:
    machine.create("a")
    machine.create("b", after="a")

    with pytest.raises(UnknownDependencyError):
        machine.create("c", after="ghost")
    with pytest.raises(DependencyCycleError):
        machine.set_after("a", "b")
    with pytest.raises(DependencyCycleError):
        machine.set_after("a", "a")


def test_dependents_to_resume_skips_held(machine: StateMachine) -> None:
    machine.create("a")
    machine.create("b", after="a")
    machine.create("c", after="a")
    machine.hold("c")
    _drive(machine, "a", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.MERGED)

    ready = machine.dependents_to_resume("a")

    assert [operation.name for operation in ready] == ["b"]
    events = [event.event for event in machine.store.read_events("c")]
    assert "unblock:held" in events


def test_cancel_then_resume(machine: StateMachine) -> None:
    machine.create("auth")
    cancelled = machine.cancel("auth")
    assert cancelled.phase == Phase.CANCELLED
    with pytest.raises(InvalidTransitionError):
        machine.cancel("auth")

    resumed = machine.resume("auth")
    assert resumed.phase == Phase.INIT
    assert resumed.cancelled_at is None


def test_merge_ready_reason(machine: StateMachine) -> None:
    machine.create("auth")
    assert machine.merge_ready_reason("auth") == "merge_queued:unset"

    _drive(machine, "auth", Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED, Phase.PENDING_MERGE)
    assert machine.merge_ready_reason("auth") is None
