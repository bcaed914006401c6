from __future__ import annotations

import asyncio
import os
import shlex
from datetime import datetime, timezone
from pathlib import Path

from convoy.collaborators.git import GitCommandError
from convoy.mergeq import CONFLICT_REASON, EntryStatus
from convoy.mergeq.daemon import MergeDaemon
from convoy.state import Phase


def _ready_operation(runtime, tmp_path: Path, name: str = "auth", **fields) -> Path:
    worktree = fields.pop("worktree", None) or tmp_path / "trees" / name
    worktree.mkdir(parents=True)
    fields.setdefault("branch", f"feature/{name}")
    runtime.machine.create(name, worktree=str(worktree), **fields)
    for phase in (Phase.PLANNED, Phase.EXECUTING, Phase.COMPLETED):
        runtime.machine.transition(name, phase)
    runtime.queue.submit_operation(name)
    return worktree


class _SessionEndsAfter:
    """Sleep stand-in that ends a session after a number of polls."""

    def __init__(self, sessions, name: str, polls: int) -> None:
        self.sessions = sessions
        self.name = name
        self.polls = polls
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) >= self.polls:
            self.sessions.finish(self.name)


def _entry(runtime, name: str):
    return runtime.queue.find(name)


def _check(runtime, name: str):
    return asyncio.run(runtime.readiness.check(_entry(runtime, name)))


class TestReadiness:
    def test_ready_operation(self, runtime, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)

        assert _check(runtime, "auth").ready

    def test_active_session_blocks(self, runtime, sessions, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.machine.update("auth", session="convoy-app-auth")
        sessions.live.add("convoy-app-auth")

        assert _check(runtime, "auth").reason == "session:active"

    def test_open_issues_are_counted(self, runtime, tracker, tmp_path) -> None:
        _ready_operation(runtime, tmp_path, issue_ids=["app-5"])
        tracker.add("app-4", status="todo", labels=["plan:auth"])
        tracker.add("app-5", status="in_progress")

        assert _check(runtime, "auth").reason == "open_issues:1:1"

    def test_uncommitted_changes_block(self, runtime, git, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path)
        git.dirty[str(worktree)] = [" M app.py", "A  new.py"]

        assert _check(runtime, "auth").reason == "uncommitted:2"

    def test_unqueued_operation(self, runtime, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.machine.update("auth", merge_queued=False)

        assert _check(runtime, "auth").reason == "merge_queued:unset"

    def test_missing_workspace_and_branch(self, runtime, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path)
        worktree.rmdir()

        assert _check(runtime, "auth").reason == "branch:missing"

    def test_tracker_outage_is_retryable(self, runtime, tracker, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        tracker.fail_queries = True

        readiness = _check(runtime, "auth")
        assert not readiness.ready
        assert readiness.retryable_error

    def test_ambiguous_ls_remote_is_not_stale(self, runtime, git) -> None:
        git.remote_branches["fix/app-1"] = "tip-1"
        runtime.queue.enqueue("fix/app-1")
        entry = _entry(runtime, "fix/app-1")

        git.fail_queries = True
        verdict = asyncio.run(runtime.readiness.check_stale(entry))
        assert not verdict.stale
        assert verdict.ambiguous

        git.fail_queries = False
        del git.remote_branches["fix/app-1"]
        verdict = asyncio.run(runtime.readiness.check_stale(entry))
        assert verdict.stale
        assert verdict.reason == "branch no longer exists on remote"

    def test_recreated_operation_makes_entry_stale(self, runtime, tmp_path) -> None:
        runtime.queue.enqueue("fix/app-1")
        runtime.queue.update("fix/app-1", operation="auth")
        runtime.machine.create("auth")

        verdict = asyncio.run(runtime.readiness.check_stale(_entry(runtime, "auth")))

        assert verdict.stale
        assert "recreated" in verdict.reason


class TestProcessing:
    def test_success_merges_and_resumes_dependents(self, runtime, git, tracker, launcher, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.queue.update("auth", issue_id="app-3")
        tracker.add("app-3", status="in_progress")
        runtime.machine.create("billing", after="auth")

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.status == "completed"
        operation = runtime.machine.get("auth")
        assert operation.phase == Phase.MERGED
        assert operation.merge_commit == outcome.merge_commit
        assert outcome.merge_commit in git.develop_commits
        assert _entry(runtime, "auth").status == EntryStatus.COMPLETED
        assert tracker.items["app-3"].status == "done"
        # Feature branches outlive the merge; only fix and chore branches are deleted.
        assert git.calls_named("push-delete") == []
        assert launcher.relaunched == ["billing"]
        assert runtime.machine.get("billing").phase == Phase.INIT
        assert not runtime.settings.merge_lock_file.exists()

    def test_fix_branch_is_deleted_after_merge(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path, name="fix-app-1", kind="fix", branch="fix/app-1")

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "fix-app-1")))

        assert outcome.status == "completed"
        assert ("push-delete", "fix/app-1") in git.calls

    def test_conflict_marks_entry_and_operation(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        git.merge_outcomes["feature/auth"] = ["conflict"]

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.status == "conflict"
        assert _entry(runtime, "auth").status == EntryStatus.CONFLICT
        operation = runtime.machine.get("auth")
        assert operation.phase == Phase.CONFLICT
        assert operation.merge_error == CONFLICT_REASON

    def test_failed_push_marks_failure(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        git.fail_push = True

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.status == "failed"
        assert "push of feature/auth failed" in outcome.reason
        assert _entry(runtime, "auth").status == EntryStatus.FAILED
        assert runtime.machine.get("auth").merge_status == "failed"

    def test_busy_merge_lock_backs_off(self, runtime, settings, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        settings.merge_lock_file.parent.mkdir(parents=True, exist_ok=True)
        settings.merge_lock_file.write_text(f"mergeq (pid {os.getpid()})\n", encoding="utf-8")

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.busy
        assert _entry(runtime, "auth").status == EntryStatus.PENDING

    def test_bare_branch_merge(self, runtime, git) -> None:
        git.remote_branches["fix/app-9"] = "tip-fix-9"
        runtime.queue.enqueue("fix/app-9", issue_id="app-9")

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "fix/app-9")))

        assert outcome.status == "completed"
        assert "fix/app-9" not in git.remote_branches


    def test_query_failure_during_merge_requeues_entry(self, runtime, git, monkeypatch, tmp_path) -> None:
        _ready_operation(runtime, tmp_path, branch=None)
        git.remote_branches["feature/auth"] = "tip-auth"

        async def unreachable(ref, cwd):
            raise GitCommandError(f"git show-ref {ref} failed (exit 128: unable to read refs)")

        monkeypatch.setattr(git, "ref_exists", unreachable)
        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.status == "error"
        entry = _entry(runtime, "auth")
        assert entry.status == EntryStatus.PENDING
        assert entry.reason.startswith("error:git show-ref")
        assert runtime.machine.get("auth").merge_status != "failed"
        assert not runtime.settings.merge_lock_file.exists()

        monkeypatch.undo()
        assert asyncio.run(runtime.processor.process(_entry(runtime, "auth"))).status == "completed"


    def test_merged_workspace_under_tree_dir_is_removed(self, runtime, git, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path, worktree=runtime.settings.tree_dir / "auth")

        outcome = asyncio.run(runtime.processor.process(_entry(runtime, "auth")))

        assert outcome.status == "completed"
        assert not worktree.exists()
        assert ("worktree-remove", str(worktree)) in git.calls
        assert ("branch-delete", "feature/auth") in git.calls
        assert runtime.machine.get("auth").phase == Phase.MERGED

    def test_workspace_outside_tree_dir_is_kept(self, runtime, git, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path)

        assert asyncio.run(runtime.processor.process(_entry(runtime, "auth"))).status == "completed"
        assert worktree.is_dir()
        assert git.calls_named("worktree-remove") == []


class TestMergeDaemon:
    def test_conflict_is_retried_once(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        git.merge_outcomes["feature/auth"] = ["conflict", "conflict"]
        daemon = MergeDaemon(runtime)

        first = asyncio.run(daemon.run_cycle())
        second = asyncio.run(daemon.run_cycle())
        third = asyncio.run(daemon.run_cycle())

        assert first.processed.status == "conflict"
        assert second.retried == ["auth"]
        assert second.processed.status == "conflict"
        assert third.retried == []
        assert third.processed is None
        entry = _entry(runtime, "auth")
        assert entry.status == EntryStatus.CONFLICT
        assert entry.conflict_retries == 1

    def test_conflict_retry_can_succeed(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        git.merge_outcomes["feature/auth"] = ["conflict"]
        daemon = MergeDaemon(runtime)

        asyncio.run(daemon.run_cycle())
        report = asyncio.run(daemon.run_cycle())

        assert report.processed.status == "completed"
        assert runtime.machine.get("auth").phase == Phase.MERGED

    def test_conflict_retry_waits_for_resolve_session(self, runtime, git, sessions, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path)
        git.merge_outcomes["feature/auth"] = ["conflict"]
        runtime.settings.resolve_command = "agent --resolve {branch} --in {worktree} {other}"
        sleep = _SessionEndsAfter(sessions, "convoy-app-resolve-auth", polls=2)
        daemon = MergeDaemon(runtime, sleep=sleep)

        asyncio.run(daemon.run_cycle())
        report = asyncio.run(daemon.run_cycle())

        expected = f"agent --resolve feature/auth --in {shlex.quote(str(worktree))} {{other}}"
        assert sessions.launches == [("convoy-app-resolve-auth", str(worktree), expected)]
        assert sleep.delays == [2.0, 2.0]
        assert report.retried == ["auth"]
        assert report.processed.status == "completed"

    def test_resolve_session_that_hangs_is_killed(self, runtime, git, sessions, recording_sleep, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        git.merge_outcomes["feature/auth"] = ["conflict", "conflict"]
        runtime.settings.resolve_command = "agent --resolve {branch}"
        runtime.settings.resolve_timeout = 4.0
        daemon = MergeDaemon(runtime, sleep=recording_sleep)

        asyncio.run(daemon.run_cycle())
        report = asyncio.run(daemon.run_cycle())

        assert recording_sleep.delays == [2.0, 2.0]
        assert sessions.killed == ["convoy-app-resolve-auth"]
        assert not sessions.live
        assert report.retried == ["auth"]
        assert report.processed.status == "conflict"

    def test_branch_conflict_resolves_in_merge_workspace(self, runtime, git, sessions) -> None:
        git.remote_branches["fix/app-9"] = "tip-9"
        git.merge_outcomes["fix/app-9"] = ["conflict"]
        runtime.queue.enqueue("fix/app-9")
        runtime.settings.resolve_command = "agent --resolve {branch}"
        daemon = MergeDaemon(runtime, sleep=_SessionEndsAfter(sessions, "convoy-app-resolve-fix-app-9", polls=1))

        asyncio.run(daemon.run_cycle())
        report = asyncio.run(daemon.run_cycle())

        assert sessions.launches == [
            ("convoy-app-resolve-fix-app-9", str(runtime.settings.workspace_dir), "agent --resolve fix/app-9")
        ]
        assert report.processed.status == "completed"

    def test_one_merge_per_cycle_in_priority_order(self, runtime, git) -> None:
        for name in ("fix/app-1", "fix/app-2"):
            git.remote_branches[name] = f"tip-{name}"
        runtime.queue.enqueue("fix/app-1")
        runtime.queue.enqueue("fix/app-2", priority=-5)
        daemon = MergeDaemon(runtime)

        report = asyncio.run(daemon.run_cycle())

        assert report.operation == "fix/app-2"
        assert _entry(runtime, "fix/app-1").status == EntryStatus.PENDING

    def test_stale_branch_entries_are_completed(self, runtime) -> None:
        runtime.queue.enqueue("fix/app-1")

        report = asyncio.run(MergeDaemon(runtime).run_cycle())

        assert report.stale == ["fix/app-1"]
        assert _entry(runtime, "fix/app-1").status == EntryStatus.COMPLETED

    def test_open_issues_resume_once(self, runtime, tracker, launcher, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        tracker.add("app-4", status="todo", labels=["plan:auth"])
        daemon = MergeDaemon(runtime)

        report = asyncio.run(daemon.run_cycle())

        assert report.resumed == ["auth"]
        assert launcher.relaunched == ["auth"]
        operation = runtime.machine.get("auth")
        assert operation.merge_resumed is True
        assert operation.payload["merge_resume_count"] == 1
        assert _entry(runtime, "auth").status == EntryStatus.RESUMED

        runtime.queue.submit_operation("auth")
        report = asyncio.run(daemon.run_cycle())
        assert report.resumed == []
        assert report.skipped["auth"] == "open_issues:1:0"
        assert launcher.relaunched == ["auth"]

    def test_missing_workspace_is_flagged(self, runtime, tmp_path) -> None:
        worktree = _ready_operation(runtime, tmp_path)
        worktree.rmdir()

        report = asyncio.run(MergeDaemon(runtime).run_cycle())

        assert report.skipped["auth"] == "branch:missing"
        assert runtime.machine.get("auth").worktree_missing is True

    def test_recovery_completes_already_merged_entry(self, runtime, git, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.queue.update("auth", EntryStatus.PROCESSING)
        git.remote_branches["feature/auth"] = "tip-auth"
        git.develop_commits.add("tip-auth")

        actions = asyncio.run(MergeDaemon(runtime).recover())

        assert [(action.operation, action.action) for action in actions] == [("auth", "completed")]
        assert _entry(runtime, "auth").status == EntryStatus.COMPLETED
        assert runtime.machine.get("auth").phase == Phase.MERGED

    def test_recovery_requeues_unmerged_entry(self, runtime, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.queue.update("auth", EntryStatus.PROCESSING)

        actions = asyncio.run(MergeDaemon(runtime).recover())

        assert [action.action for action in actions] == ["pending"]
        assert _entry(runtime, "auth").status == EntryStatus.PENDING

    def test_recovery_drops_entry_without_state_record(self, runtime, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.queue.update("auth", EntryStatus.PROCESSING)
        runtime.machine.store.delete("auth")

        actions = asyncio.run(MergeDaemon(runtime).recover())

        assert [(action.operation, action.action) for action in actions] == [("auth", "removed")]
        assert _entry(runtime, "auth") is None

    def test_recovery_skips_while_merge_lock_is_live(self, runtime, settings, tmp_path) -> None:
        _ready_operation(runtime, tmp_path)
        runtime.queue.update("auth", EntryStatus.PROCESSING)
        settings.merge_lock_file.parent.mkdir(parents=True, exist_ok=True)
        settings.merge_lock_file.write_text(f"mergeq (pid {os.getpid()})\n", encoding="utf-8")

        assert asyncio.run(MergeDaemon(runtime).recover()) == []
        assert _entry(runtime, "auth").status == EntryStatus.PROCESSING

    def test_prune_runs_on_its_own_schedule(self, runtime) -> None:
        moments = iter(
            [
                datetime(2025, 1, 2, tzinfo=timezone.utc),
                datetime(2025, 1, 2, 0, 5, tzinfo=timezone.utc),
                datetime(2025, 1, 2, 0, 11, tzinfo=timezone.utc),
            ]
        )
        runtime.queue.enqueue("fix/app-1")
        runtime.queue.update("fix/app-1", EntryStatus.COMPLETED)
        daemon = MergeDaemon(runtime, clock=lambda: next(moments))

        assert [entry.operation for entry in daemon.maybe_prune()] == ["fix/app-1"]
        runtime.queue.enqueue("fix/app-2")
        runtime.queue.update("fix/app-2", EntryStatus.FAILED)
        assert daemon.maybe_prune() == []
        assert [entry.operation for entry in daemon.maybe_prune()] == ["fix/app-2"]

    def test_run_sleeps_between_cycles(self, runtime, recording_sleep) -> None:
        daemon = MergeDaemon(runtime, sleep=recording_sleep)

        cycles = asyncio.run(daemon.run(max_cycles=3))

        assert cycles == 3
        assert recording_sleep.delays == [runtime.settings.merge_poll_interval] * 2


def test_unexpected_processing_error_returns_entry_to_pending(runtime, monkeypatch, tmp_path) -> None:
    _ready_operation(runtime, tmp_path)

    async def explode(entry):
        raise ValueError("unexpected merge state")

    monkeypatch.setattr(runtime.processor, "_process_locked", explode)
    daemon = MergeDaemon(runtime)
    report = asyncio.run(daemon.run_cycle())

    assert report.skipped["auth"] == "error:unexpected merge state"
    assert _entry(runtime, "auth").status == EntryStatus.PENDING
    assert not runtime.settings.merge_lock_file.exists()

    monkeypatch.undo()
    assert asyncio.run(daemon.run_cycle()).processed.status == "completed"


def test_conflict_retry_limit_is_configurable(runtime, git, tmp_path) -> None:
    _ready_operation(runtime, tmp_path)
    git.merge_outcomes["feature/auth"] = ["conflict"] * 3
    runtime.settings.conflict_retry_limit = 2
    daemon = MergeDaemon(runtime)

    reports = [asyncio.run(daemon.run_cycle()) for _ in range(4)]

    assert [report.processed.status if report.processed else None for report in reports] == [
        "conflict",
        "conflict",
        "conflict",
        None,
    ]
    assert _entry(runtime, "auth").conflict_retries == 2
