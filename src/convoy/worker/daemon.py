"""Worker polling daemon.

One daemon runs per worker kind. It claims the next open tracker item,
provisions a workspace for it, launches an agent session and supervises that
session until it exits. A clean exit with commits submits the work to the
merge queue; a clean exit without commits hands the item to a human; a crash
backs off exponentially and the daemon stops itself after a second crash
without progress.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..alerts import WORKER_CRASH, WORKER_STOPPED
from ..collaborators.git import GitCommandError
from ..collaborators.runner import CommandError
from ..collaborators.sessions import SessionError
from ..collaborators.tracker import TrackerItem
from ..collaborators.utils import render_command
from ..config import ConvoySettings, get_settings
from ..locking import FileLock, LivenessChecker, LockHeldError
from ..logs import configure_logging
from ..runtime import Runtime, build_runtime
from ..state.machine import InvalidTransitionError
from ..state.models import MERGEABLE_PHASES, RECOVERABLE_PHASES, Operation, OperationKind, Phase
from ..workspace import Workspace, WorkspaceError

logger = logging.getLogger(__name__)

DONE_EXIT = ".done-exit"
WORKER_ERROR = ".worker-error"
CRASH_ALERT_FLAG = ".worker-crash-alert"
STOPPED_MARKER = ".worker-stopped"

HUMAN_OWNER = "worker:human"

# Tracker item type polled by each worker kind.
ITEM_TYPES = {"fix": "bug", "chore": "chore"}

Sleep = Callable[[float], Awaitable[None]]


class WorkerError(RuntimeError):
    """Raised when a worker daemon cannot start."""


@dataclass(slots=True)
class Assignment:
    item_id: str
    operation: str
    workspace: Workspace
    session: str


@dataclass(slots=True)
class WorkerCycle:
    status: str
    item_id: str | None = None
    detail: str | None = None


def backoff_delay(failures: int, *, base: float = 5.0, cap: float = 300.0) -> float:
    """Return the delay after ``failures`` consecutive failures: base, 2*base, ... capped."""

    if failures <= 0:
        return 0.0
    return min(base * 2 ** (failures - 1), cap)


def handoff_note(item: TrackerItem) -> str:
    if item.notes:
        return (
            f"Worker finished {item.id} without committing a fix but left a note. "
            f"Reassigned to a human for review; see 'wk show {item.id}', then fix it or close it with a reason."
        )
    return (
        f"Worker finished {item.id} without committing a fix or leaving a note. "
        "Reassigned to a human to investigate."
    )


class WorkerDaemon:
    def __init__(
        self,
        runtime: Runtime,
        kind: str,
        *,
        sleep: Sleep | None = None,
        liveness: LivenessChecker | None = None,
    ) -> None:
        if kind not in ITEM_TYPES:
            raise WorkerError(f"Unknown worker kind '{kind}'; expected one of {sorted(ITEM_TYPES)}")
        self._runtime = runtime
        self._settings: ConvoySettings = runtime.settings
        self._machine = runtime.machine
        self._queue = runtime.queue
        self._git = runtime.git
        self._sessions = runtime.sessions
        self._tracker = runtime.tracker
        self._provisioner = runtime.provisioner
        self._alerts = runtime.alerts
        self._kind = kind
        self._item_type = ITEM_TYPES[kind]
        self._sleep = sleep or asyncio.sleep
        self._pid_lock = FileLock(self.pid_file, f"worker-{kind}", liveness=liveness)
        self._current: Assignment | None = None
        self._failures = 0
        self._stopped = False

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def owner(self) -> str:
        return f"worker:{self._kind}"

    @property
    def pid_file(self) -> Path:
        return self._settings.workers_dir / f"{self._kind}.pid"

    @property
    def log_file(self) -> Path:
        return self._settings.workers_dir / f"{self._kind}.log"

    @property
    def session_name(self) -> str:
        return f"convoy-{self._settings.project}-{self._kind}"

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def current(self) -> Assignment | None:
        return self._current

    def operation_name(self, item_id: str) -> str:
        return f"{self._kind}-{item_id}"

    def launch_command(self, assignment: Assignment) -> str:
        return render_command(
            self._settings.agent_command,
            id=shlex.quote(assignment.item_id),
            kind=shlex.quote(self._kind),
            branch=shlex.quote(assignment.workspace.branch),
            worktree=shlex.quote(str(assignment.workspace.path)),
            project=shlex.quote(self._settings.project),
        )

    async def run_cycle(self) -> WorkerCycle:
        if self._stopped:
            return WorkerCycle(status="stopped")
        if self._current is None:
            return await self._claim_next()

        assignment = self._current
        if await self._sessions.exists(assignment.session):
            return WorkerCycle(status="busy", item_id=assignment.item_id)

        tree = assignment.workspace.path
        if (tree / DONE_EXIT).exists() and not (tree / WORKER_ERROR).exists():
            return await self._finish_clean(assignment)
        return await self._handle_crash(assignment)

    async def _claim_next(self) -> WorkerCycle:
        items = await self._tracker.list_items(type=self._item_type, status="todo")
        item = next((candidate for candidate in items if self._claimable(candidate)), None)
        if item is None:
            return WorkerCycle(status="idle")

        await self._tracker.start(item.id)
        await self._tracker.assign(item.id, self.owner)
        name = self.operation_name(item.id)
        branch = self._settings.branch_for(self._kind, item.id)
        try:
            workspace = await self._provisioner.provision(name, branch)
            await self._provisioner.reset_to_develop(workspace)
            await self._provisioner.write_markers(workspace)
        except (WorkspaceError, GitCommandError) as exc:
            logger.error("Workspace provisioning failed", extra={"item": item.id, "error": str(exc)})
            await self._release_item(item.id)
            return WorkerCycle(status="error", item_id=item.id, detail=str(exc))

        self._prepare_operation(name, item, workspace)
        assignment = Assignment(item_id=item.id, operation=name, workspace=workspace, session=self.session_name)
        self._current = assignment
        logger.info("Claimed item", extra={"item": item.id, "kind": self._kind, "branch": branch})
        launched = await self._launch(assignment)
        return WorkerCycle(status="launched" if launched else "launch_failed", item_id=item.id)

    def _claimable(self, item: TrackerItem) -> bool:
        operation = self._machine.store.get(self.operation_name(item.id))
        if operation is None:
            return True
        if operation.held:
            return False
        # Work already headed for the merge queue is not claimed twice.
        return operation.phase not in MERGEABLE_PHASES | {Phase.CONFLICT}

    def _prepare_operation(self, name: str, item: TrackerItem, workspace: Workspace) -> Operation:
        store = self._machine.store
        existing = store.get(name)
        if existing is not None and existing.is_terminal:
            store.delete(name)
            existing = None
        if existing is None:
            self._machine.create(
                name,
                OperationKind(self._kind),
                prompt=item.title,
                labels=item.labels,
                worktree=str(workspace.path),
                branch=workspace.branch,
                payload={"issue_id": item.id},
            )
        elif existing.phase in RECOVERABLE_PHASES:
            self._machine.resume(name, force=True)

        if self._machine.get(name).phase == Phase.INIT:
            self._machine.transition(name, Phase.PLANNED)
        self._machine.transition(name, Phase.EXECUTING)
        return self._machine.update(name, worktree=str(workspace.path), branch=workspace.branch)

    async def _launch(self, assignment: Assignment) -> bool:
        tree = assignment.workspace.path
        (tree / DONE_EXIT).unlink(missing_ok=True)
        (tree / WORKER_ERROR).unlink(missing_ok=True)
        command = self.launch_command(assignment)
        for attempt in (1, 2):
            try:
                await self._sessions.launch(assignment.session, tree, command)
            except SessionError as exc:
                logger.warning(
                    "Session launch failed",
                    extra={"session": assignment.session, "attempt": attempt, "error": str(exc)},
                )
                continue
            self._machine.update(assignment.operation, session=assignment.session)
            return True
        logger.error("Could not launch worker session", extra={"session": assignment.session})
        return False

    async def _commits_ahead(self, workspace: Workspace) -> int | None:
        """Commits on the workspace branch past the develop tip, or None when git cannot tell."""

        try:
            return await self._git.count_commits(f"{self._settings.remote_develop}..HEAD", workspace.path)
        except GitCommandError as exc:
            logger.warning("Could not count commits", extra={"workspace": str(workspace.path), "error": str(exc)})
            return None

    def _undecided(self, assignment: Assignment) -> WorkerCycle:
        # Keep the assignment and its sentinels so the next cycle asks again.
        return WorkerCycle(status="undecided", item_id=assignment.item_id, detail="commit count unavailable")

    async def _finish_clean(self, assignment: Assignment) -> WorkerCycle:
        tree = assignment.workspace.path
        commits = await self._commits_ahead(assignment.workspace)
        if commits is None:
            return self._undecided(assignment)
        self._failures = 0
        (tree / CRASH_ALERT_FLAG).unlink(missing_ok=True)
        (tree / DONE_EXIT).unlink(missing_ok=True)
        self._current = None
        # The session name is reused by this worker's next item.
        self._machine.update(assignment.operation, session=None)

        if commits > 0:
            try:
                await self._git.push(tree, assignment.workspace.branch, set_upstream=True)
            except GitCommandError as exc:
                logger.error("Push failed; returning item to the tracker", extra={"item": assignment.item_id, "error": str(exc)})
                self._machine.transition(assignment.operation, Phase.FAILED, reason=f"push failed: {exc}")
                await self._release_item(assignment.item_id)
                return WorkerCycle(status="error", item_id=assignment.item_id, detail=str(exc))
            self._machine.transition(assignment.operation, Phase.COMPLETED)
            result = self._queue.submit_operation(assignment.operation, issue_id=assignment.item_id)
            logger.info("Submitted work for merge", extra={"item": assignment.item_id, "queue": result.message})
            return WorkerCycle(status="completed", item_id=assignment.item_id)

        item = await self._tracker.show(assignment.item_id)
        reason = handoff_note(item)
        await self._tracker.assign(assignment.item_id, HUMAN_OWNER)
        await self._tracker.note(assignment.item_id, reason)
        self._machine.transition(assignment.operation, Phase.FAILED, reason=reason)
        logger.warning("Handed item to a human", extra={"item": assignment.item_id})
        return WorkerCycle(status="handoff", item_id=assignment.item_id, detail=reason)

    async def _handle_crash(self, assignment: Assignment) -> WorkerCycle:
        tree = assignment.workspace.path
        commits = await self._commits_ahead(assignment.workspace)
        if commits is None:
            return self._undecided(assignment)
        (tree / WORKER_ERROR).unlink(missing_ok=True)
        self._failures += 1
        delay = backoff_delay(self._failures, base=self._settings.backoff_base, cap=self._settings.backoff_cap)
        logger.warning(
            "Worker session ended without a clean exit",
            extra={"item": assignment.item_id, "failures": self._failures, "backoff": delay},
        )
        await self._sleep(delay)

        flag = tree / CRASH_ALERT_FLAG
        if commits > 0:
            logger.info("Crashed session had made progress", extra={"item": assignment.item_id})
            flag.unlink(missing_ok=True)
        elif not flag.exists():
            self._alerts.raise_alert(
                WORKER_CRASH,
                f"{self.session_name} exited without making progress",
                operation=assignment.operation,
                item=assignment.item_id,
                failures=self._failures,
            )
            flag.write_text("", encoding="utf-8")
        else:
            self._alerts.raise_alert(
                WORKER_STOPPED,
                f"{self.session_name} still makes no progress; stopping (logs kept in {tree})",
                operation=assignment.operation,
                item=assignment.item_id,
                failures=self._failures,
            )
            (tree / STOPPED_MARKER).write_text("", encoding="utf-8")
            await self.reopen_worker_items()
            try:
                self._machine.transition(assignment.operation, Phase.INTERRUPTED)
            except InvalidTransitionError as exc:
                logger.warning("Could not interrupt operation", extra={"operation": assignment.operation, "error": str(exc)})
            self._current = None
            self._stopped = True
            return WorkerCycle(status="stopped", item_id=assignment.item_id)

        try:
            await self._provisioner.reset_to_develop(assignment.workspace)
        except WorkspaceError as exc:
            logger.warning("Workspace reset failed", extra={"item": assignment.item_id, "error": str(exc)})
        launched = await self._launch(assignment)
        return WorkerCycle(status="relaunched" if launched else "launch_failed", item_id=assignment.item_id)

    async def _release_item(self, item_id: str) -> None:
        await self._tracker.reopen(item_id)
        await self._tracker.assign(item_id, "none")

    async def reopen_worker_items(self) -> list[str]:
        """Return this worker's in-progress items to the open pool."""

        items = await self._tracker.list_items(status="in_progress", assignee=self.owner)
        reopened: list[str] = []
        for item in items:
            try:
                await self._release_item(item.id)
            except CommandError as exc:
                logger.warning("Could not reopen item", extra={"item": item.id, "error": str(exc)})
                continue
            reopened.append(item.id)
        if reopened:
            logger.info("Reopened worker items", extra={"kind": self._kind, "items": reopened})
        return reopened

    async def adopt(self) -> Assignment | None:
        """Pick up an item this worker had in flight before a restart."""

        items = await self._tracker.list_items(type=self._item_type, status="in_progress", assignee=self.owner)
        for item in items:
            name = self.operation_name(item.id)
            path = self._provisioner.path_for(name)
            if not path.is_dir():
                continue
            workspace = Workspace(name=name, path=path, branch=self._settings.branch_for(self._kind, item.id))
            self._current = Assignment(item_id=item.id, operation=name, workspace=workspace, session=self.session_name)
            if not self._machine.store.exists(name):
                self._prepare_operation(name, item, workspace)
            logger.info("Adopted in-flight item", extra={"item": item.id, "kind": self._kind})
            return self._current
        return None

    async def stop(self) -> list[str]:
        reopened = await self.reopen_worker_items()
        self._current = None
        self._stopped = True
        self._pid_lock.release()
        return reopened

    async def run(self, max_cycles: int | None = None) -> int:
        try:
            self._pid_lock.acquire()
        except LockHeldError as exc:
            raise WorkerError(f"A {self._kind} worker is already running (pid {exc.pid})") from exc
        try:
            await self.adopt()
            cycles = 0
            while not self._stopped and (max_cycles is None or cycles < max_cycles):
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Worker cycle failed", extra={"kind": self._kind})
                cycles += 1
                if self._stopped or (max_cycles is not None and cycles >= max_cycles):
                    break
                await self._sleep(self._settings.worker_poll_interval)
            return cycles
        finally:
            self._pid_lock.release()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a convoy worker polling daemon")
    parser.add_argument("kind", choices=sorted(ITEM_TYPES), help="Worker kind to run")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--stop", action="store_true", help="Reopen this worker's items and exit")
    parser.add_argument("--log-level", help="Override CONVOY_LOG_LEVEL")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    runtime = build_runtime(settings, holder=f"worker-{args.kind}")
    daemon = WorkerDaemon(runtime, args.kind)
    configure_logging((args.log_level or settings.log_level).upper(), daemon.log_file)

    if args.stop:
        for item_id in asyncio.run(daemon.stop()):
            print(f"reopened {item_id}")
        return

    logger.info("Starting worker daemon", extra={"project": settings.project, "kind": args.kind})
    try:
        asyncio.run(daemon.run(max_cycles=1 if args.once else None))
    except WorkerError as exc:
        print(str(exc))
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.info("Worker daemon interrupted", extra={"kind": args.kind})
        raise SystemExit(130)
    if daemon.stopped:
        raise SystemExit(1)


__all__ = [
    "Assignment",
    "ITEM_TYPES",
    "WorkerCycle",
    "WorkerDaemon",
    "WorkerError",
    "backoff_delay",
    "build_parser",
    "handoff_note",
    "main",
]


if __name__ == "__main__":
    main()
