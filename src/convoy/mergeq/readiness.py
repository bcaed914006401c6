"""Staleness and readiness checks for pending merge entries.

A failed collaborator query never counts as a negative answer: ``ls-remote``
erroring out is not "the branch is gone", and a tracker outage is not "no open
issues". Such failures produce an ambiguous verdict or an ``error:`` reason
that the daemon simply re-checks next cycle.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..collaborators.git import Git, GitCommandError
from ..collaborators.runner import CommandError
from ..collaborators.sessions import SessionHost
from ..collaborators.tracker import Tracker
from ..config import ConvoySettings
from ..state.machine import StateMachine
from ..state.models import Operation
from .models import MergeKind, QueueEntry, Readiness, StaleVerdict

logger = logging.getLogger(__name__)

BRANCH_PREFIXES = ("feature", "fix", "chore", "bugfix", "hotfix")


def looks_like_branch(name: str) -> bool:
    return "/" in name


class ReadinessChecker:
    def __init__(
        self,
        settings: ConvoySettings,
        machine: StateMachine,
        git: Git,
        sessions: SessionHost,
        tracker: Tracker,
        *,
        repo: Path | None = None,
    ) -> None:
        self._settings = settings
        self._machine = machine
        self._git = git
        self._sessions = sessions
        self._tracker = tracker
        self._repo = repo or settings.project_root

    @property
    def repo(self) -> Path:
        return self._repo

    @repo.setter
    def repo(self, value: Path) -> None:
        self._repo = value

    def _record(self, entry: QueueEntry) -> Operation | None:
        if looks_like_branch(entry.operation):
            return None
        return self._machine.store.get(entry.operation)

    async def verify_merged(self, operation: Operation) -> bool:
        """Confirm the recorded merge commit (or branch tip) is on the remote develop branch."""

        target = operation.merge_commit
        if not target and operation.branch:
            target = f"{self._settings.git_remote}/{operation.branch}"
        if not target:
            return False
        return await self._git.is_ancestor(target, self._settings.remote_develop, self._repo)

    async def check_stale(self, entry: QueueEntry) -> StaleVerdict:
        record = self._record(entry)
        if record is not None:
            if record.merged_at:
                try:
                    verified = await self.verify_merged(record)
                except GitCommandError as exc:
                    logger.warning(
                        "Merge verification query failed; keeping entry",
                        extra={"operation": entry.operation, "error": str(exc)},
                    )
                    return StaleVerdict(stale=False, reason=str(exc), ambiguous=True)
                if verified:
                    return StaleVerdict(stale=True, reason=f"already merged at {record.merged_at}")
                return StaleVerdict(stale=True, reason="claims merged but verification failed")
            if record.created_at and entry.enqueued_at and record.created_at > entry.enqueued_at:
                return StaleVerdict(stale=True, reason="stale queue entry (operation recreated)")
            return StaleVerdict(stale=False)

        if looks_like_branch(entry.operation):
            try:
                exists = await self._git.remote_branch_exists(entry.operation, self._repo)
            except GitCommandError as exc:
                logger.warning(
                    "ls-remote failed; not treating branch as gone",
                    extra={"operation": entry.operation, "error": str(exc)},
                )
                return StaleVerdict(stale=False, reason=str(exc), ambiguous=True)
            if not exists:
                return StaleVerdict(stale=True, reason="branch no longer exists on remote")
            return StaleVerdict(stale=False)

        return StaleVerdict(stale=True, reason="no state record and not a branch")

    async def resolve_branch(self, operation: Operation) -> str | None:
        """Find the branch to merge for an operation, or None when nothing usable exists."""

        remote = self._settings.git_remote
        if operation.worktree and Path(operation.worktree).is_dir() and operation.branch:
            return operation.branch
        if not operation.branch:
            for prefix in BRANCH_PREFIXES:
                candidate = f"{prefix}/{operation.name}"
                if await self._git.ref_exists(f"refs/remotes/{remote}/{candidate}", self._repo):
                    return candidate
            return None
        if await self._git.ref_exists(f"refs/heads/{operation.branch}", self._repo):
            return operation.branch
        if await self._git.ref_exists(f"refs/remotes/{remote}/{operation.branch}", self._repo):
            return operation.branch
        return None

    async def check(self, entry: QueueEntry) -> Readiness:
        try:
            if entry.merge_kind == MergeKind.BRANCH or looks_like_branch(entry.operation):
                return await self._check_branch(entry)
            return await self._check_operation(entry)
        except CommandError as exc:
            return Readiness(ready=False, reason=f"error:{exc}")

    async def _check_branch(self, entry: QueueEntry) -> Readiness:
        if await self._git.remote_branch_exists(entry.operation, self._repo):
            return Readiness(ready=True)
        return Readiness(ready=False, reason="branch:missing")

    async def _check_operation(self, entry: QueueEntry) -> Readiness:
        operation = self._machine.store.get(entry.operation)
        if operation is None:
            return Readiness(ready=False, reason="error:no state record")

        reason = self._machine.merge_ready_reason(operation.name)
        if reason is not None:
            return Readiness(ready=False, reason=reason)

        has_worktree = bool(operation.worktree) and Path(operation.worktree).is_dir()
        if await self.resolve_branch(operation) is None and not has_worktree:
            return Readiness(ready=False, reason="branch:missing" if operation.branch else "worktree:missing")

        if operation.session and await self._sessions.exists(operation.session):
            return Readiness(ready=False, reason="session:active")

        todo, in_progress = await self._open_issue_counts(operation)
        if todo or in_progress:
            return Readiness(ready=False, reason=f"open_issues:{todo}:{in_progress}")

        if has_worktree:
            changes = await self._git.status_porcelain(Path(operation.worktree))
            if changes:
                return Readiness(ready=False, reason=f"uncommitted:{len(changes)}")

        return Readiness(ready=True)

    async def _open_issue_counts(self, operation: Operation) -> tuple[int, int]:
        label = f"plan:{operation.name}"
        todo = {item.id for item in await self._tracker.list_items(label=label, status="todo")}
        in_progress = {item.id for item in await self._tracker.list_items(label=label, status="in_progress")}
        for issue_id in operation.issue_ids:
            if issue_id in todo or issue_id in in_progress:
                continue
            item = await self._tracker.show(issue_id)
            if item.status == "todo":
                todo.add(issue_id)
            elif item.status == "in_progress":
                in_progress.add(issue_id)
        return len(todo), len(in_progress)


__all__ = ["BRANCH_PREFIXES", "ReadinessChecker", "looks_like_branch"]
