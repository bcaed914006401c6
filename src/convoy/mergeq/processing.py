"""Integrate one queue entry into the develop branch.

The checkout, merge and push all run in the dedicated merge workspace while
``.merge.lock`` is held. A second daemon (or the control server's recovery
pass) that finds the lock held by a live process backs off with a ``busy``
outcome instead of waiting.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..alerts import MERGE_CONFLICT, MERGE_FAILED, AlertSink
from ..collaborators.git import Git, GitCommandError
from ..collaborators.launcher import Launcher
from ..collaborators.runner import CommandError
from ..collaborators.tracker import Tracker, TrackerError
from ..config import ConvoySettings
from ..locking import FileLock, LivenessChecker, LockHeldError
from ..state.machine import StateMachine
from ..state.models import Operation, OperationKind, Phase
from ..state.store import StateError
from ..workspace import Workspace, WorkspaceError, WorkspaceProvisioner
from .models import EntryStatus, MergeKind, ProcessOutcome, QueueEntry
from .queue import MergeQueue
from .readiness import ReadinessChecker, looks_like_branch

logger = logging.getLogger(__name__)

CONFLICT_REASON = "Automatic resolution failed"
DISPOSABLE_KINDS = frozenset({OperationKind.FIX, OperationKind.CHORE})


class _MergeFailed(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MergeProcessor:
    def __init__(
        self,
        settings: ConvoySettings,
        queue: MergeQueue,
        readiness: ReadinessChecker,
        git: Git,
        tracker: Tracker,
        provisioner: WorkspaceProvisioner,
        launcher: Launcher,
        *,
        alerts: AlertSink | None = None,
        liveness: LivenessChecker | None = None,
        holder: str = "mergeq",
    ) -> None:
        self._settings = settings
        self._queue = queue
        self._machine: StateMachine = queue.machine
        self._readiness = readiness
        self._git = git
        self._tracker = tracker
        self._provisioner = provisioner
        self._launcher = launcher
        self._alerts = alerts or AlertSink()
        self._liveness = liveness
        self._holder = holder

    def merge_lock(self) -> FileLock:
        return FileLock(self._settings.merge_lock_file, self._holder, liveness=self._liveness)

    async def process(self, entry: QueueEntry) -> ProcessOutcome:
        lock = self.merge_lock()
        try:
            lock.acquire()
        except LockHeldError as exc:
            logger.info("Merge lock busy; retrying next cycle", extra={"operation": entry.operation, "holder": exc.holder})
            return ProcessOutcome(status="busy", reason=str(exc))
        try:
            self._queue.update(entry.operation, EntryStatus.PROCESSING)
            try:
                return await self._process_locked(entry)
            except (CommandError, StateError) as exc:
                return self._requeue(entry, exc)
        finally:
            lock.release()

    async def _process_locked(self, entry: QueueEntry) -> ProcessOutcome:
        name = entry.operation
        operation = None
        if entry.merge_kind == MergeKind.OPERATION and not looks_like_branch(name):
            operation = self._machine.store.get(name)
            if operation is None:
                return self._fail(entry, "no state record")

        logger.info("Processing merge", extra={"operation": name, "merge_kind": entry.merge_kind.value})
        try:
            workdir = await self._provisioner.ensure_merge_workspace()
        except WorkspaceError as exc:
            return self._fail(entry, f"workspace creation failed: {exc}")
        self._readiness.repo = workdir

        if operation is not None:
            branch = await self._readiness.resolve_branch(operation)
            worktree = Path(operation.worktree) if operation.worktree else None
            if worktree is not None and not worktree.is_dir():
                worktree = None
            if branch is None and worktree is not None:
                branch = operation.branch or await self._git.current_branch(worktree)
            if branch is None:
                return self._fail(entry, "workspace missing")
            self._machine.update(name, merge_status="merging")
        else:
            branch, worktree = name, None

        try:
            merge_commit = await self._integrate(branch, worktree, workdir)
        except _MergeFailed as failure:
            if failure.reason == CONFLICT_REASON:
                return self._conflict(entry)
            return self._fail(entry, failure.reason)
        except GitCommandError as exc:
            return self._fail(entry, str(exc))

        try:
            verified = await self._git.is_ancestor(merge_commit, self._settings.remote_develop, workdir)
        except GitCommandError as exc:
            logger.warning("Merge verification query failed", extra={"operation": name, "error": str(exc)})
            verified = False
        if not verified:
            if operation is not None:
                self._machine.update(
                    name,
                    merge_status="verification_failed",
                    merge_error=f"Commit {merge_commit} not found on {self._settings.remote_develop}",
                )
            return self._fail(entry, "verification_failed", record_state=False)

        return await self._complete(entry, branch, merge_commit, workdir)

    async def _integrate(self, branch: str, worktree: Path | None, workdir: Path) -> str:
        develop = self._settings.develop_branch
        remote = self._settings.git_remote
        if worktree is not None:
            # Publish the worktree's commits so the merge workspace can fetch them.
            try:
                await self._git.push(worktree, branch, set_upstream=True)
            except GitCommandError as exc:
                raise _MergeFailed(f"push of {branch} failed: {exc}") from exc

        await self._git.checkout(develop, workdir)
        try:
            await self._git.pull_ff_only(workdir)
        except GitCommandError as exc:
            logger.warning("Fast-forward of develop failed", extra={"error": str(exc)})
        await self._git.abort_in_progress(workdir)
        try:
            await self._git.fetch(workdir, branch)
        except GitCommandError as exc:
            raise _MergeFailed(f"fetch failed: {exc}") from exc

        attempt = await self._git.merge(f"{remote}/{branch}", workdir)
        if attempt.conflict:
            logger.warning("Merge conflict", extra={"branch": branch, "files": attempt.conflicted})
            raise _MergeFailed(CONFLICT_REASON)
        if not attempt.merged:
            await self._git.abort_in_progress(workdir)
            raise _MergeFailed(f"merge failed: {attempt.detail}")

        merge_commit = await self._git.rev_parse("HEAD", workdir)
        try:
            await self._git.push(workdir, develop)
        except GitCommandError as exc:
            raise _MergeFailed(f"push failed: {exc}") from exc
        try:
            await self._git.fetch(workdir, develop)
        except GitCommandError as exc:
            logger.warning("Post-merge fetch failed", extra={"error": str(exc)})
        return merge_commit

    async def _complete(self, entry: QueueEntry, branch: str, merge_commit: str, workdir: Path) -> ProcessOutcome:
        name = entry.operation
        self._queue.update(name, EntryStatus.COMPLETED, reason=None)

        operation = self._machine.store.get(name) if entry.merge_kind == MergeKind.OPERATION else None
        if operation is not None:
            self._machine.mark_merged(name, merge_commit=merge_commit)
            self._machine.store.append_event(name, "merge:completed", {"merge_commit": merge_commit})

        if operation is None or operation.kind in DISPOSABLE_KINDS:
            try:
                await self._git.delete_remote_branch(branch, workdir)
            except GitCommandError as exc:
                logger.warning("Could not delete merged branch", extra={"branch": branch, "error": str(exc)})

        if entry.issue_id:
            try:
                await self._tracker.done(entry.issue_id)
            except TrackerError as exc:
                logger.warning("Could not close issue", extra={"issue": entry.issue_id, "error": str(exc)})

        if operation is not None:
            await self._remove_workspace(operation)
            await self._resume_dependents(name)

        self._alerts.record_merge(name, "completed", merge_commit=merge_commit)
        logger.info("Merge completed", extra={"operation": name, "merge_commit": merge_commit})
        return ProcessOutcome(status="completed", merge_commit=merge_commit)

    async def _remove_workspace(self, operation: Operation) -> None:
        """Drop the merged operation's working copy when it lives under the tree directory."""

        if not operation.worktree:
            return
        path = Path(operation.worktree)
        if not path.is_dir() or self._settings.tree_dir.resolve() not in path.resolve().parents:
            return
        workspace = Workspace(name=operation.name, path=path, branch=operation.branch or self._settings.develop_branch)
        try:
            await self._provisioner.remove(workspace)
        except WorkspaceError as exc:
            logger.warning("Could not remove merged workspace", extra={"operation": operation.name, "error": str(exc)})

    async def _resume_dependents(self, name: str) -> None:
        for dependent in self._machine.dependents_to_resume(name):
            try:
                resumed = self._machine.resume(dependent.name)
                await self._launcher.relaunch(resumed)
            except RuntimeError as exc:
                logger.exception(
                    "Failed to resume dependent operation",
                    extra={"operation": dependent.name, "after": name, "error": str(exc)},
                )
                continue
            logger.info("Resumed dependent operation", extra={"operation": dependent.name, "after": name})

    def _conflict(self, entry: QueueEntry) -> ProcessOutcome:
        name = entry.operation
        self._queue.update(name, EntryStatus.CONFLICT, reason=CONFLICT_REASON)
        if entry.merge_kind == MergeKind.OPERATION and self._machine.store.exists(name):
            operation = self._machine.get(name)
            if operation.phase == Phase.COMPLETED:
                self._machine.transition(name, Phase.PENDING_MERGE)
            self._machine.transition(name, Phase.CONFLICT, merge_error=CONFLICT_REASON)
        self._alerts.raise_alert(MERGE_CONFLICT, f"Merge conflict for {name}", operation=name)
        self._alerts.record_merge(name, "conflict", reason=CONFLICT_REASON)
        return ProcessOutcome(status="conflict", reason=CONFLICT_REASON)

    def _requeue(self, entry: QueueEntry, exc: Exception) -> ProcessOutcome:
        # A failed query says nothing about the merge itself; try again next cycle.
        reason = f"error:{exc}"
        logger.warning("Merge attempt interrupted; entry requeued", extra={"operation": entry.operation, "error": str(exc)})
        self._queue.update(entry.operation, EntryStatus.PENDING, reason=reason)
        return ProcessOutcome(status="error", reason=reason)

    def _fail(self, entry: QueueEntry, reason: str, *, record_state: bool = True) -> ProcessOutcome:
        name = entry.operation
        self._queue.update(name, EntryStatus.FAILED, reason=reason)
        if record_state and entry.merge_kind == MergeKind.OPERATION and self._machine.store.exists(name):
            self._machine.update(name, merge_status="failed", merge_error=reason)
        self._alerts.raise_alert(MERGE_FAILED, f"Merge failed for {name}: {reason}", operation=name)
        self._alerts.record_merge(name, "failed", reason=reason)
        return ProcessOutcome(status="failed", reason=reason)


__all__ = ["CONFLICT_REASON", "MergeProcessor"]
