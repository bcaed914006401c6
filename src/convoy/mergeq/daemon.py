"""Merge queue daemon: recovery, the per-cycle walk over pending entries, and pruning."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..collaborators.git import GitCommandError
from ..collaborators.sessions import SessionError
from ..collaborators.utils import render_command
from ..config import get_settings
from ..locking import LockHeldError
from ..logs import configure_logging
from ..runtime import Runtime, build_runtime
from ..state.models import Operation, Phase
from ..timeutil import Clock, utc_now
from ..workspace import WorkspaceError
from .models import EntryStatus, MergeKind, ProcessOutcome, QueueEntry
from .readiness import looks_like_branch

logger = logging.getLogger(__name__)

MAX_LOGGED_REASONS = 5
RESOLVE_POLL_INTERVAL = 2.0

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class CycleReport:
    processed: ProcessOutcome | None = None
    operation: str | None = None
    stale: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    retried: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RecoveryAction:
    operation: str
    action: str


class MergeDaemon:
    def __init__(self, runtime: Runtime, *, sleep: Sleep | None = None, clock: Clock | None = None) -> None:
        self._runtime = runtime
        self._settings = runtime.settings
        self._queue = runtime.queue
        self._machine = runtime.machine
        self._git = runtime.git
        self._readiness = runtime.readiness
        self._processor = runtime.processor
        self._provisioner = runtime.provisioner
        self._launcher = runtime.launcher
        self._sessions = runtime.sessions
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or utc_now
        self._last_prune: datetime | None = None

    async def _workspace(self) -> Path:
        workdir = await self._provisioner.ensure_merge_workspace()
        self._readiness.repo = workdir
        return workdir

    async def recover(self) -> list[RecoveryAction]:
        """Resolve entries left in ``processing`` by a crashed daemon.

        Runs only while no live process holds the merge lock.
        """

        stuck = self._queue.with_status(EntryStatus.PROCESSING)
        if not stuck:
            return []
        lock = self._processor.merge_lock()
        try:
            lock.acquire()
        except LockHeldError as exc:
            logger.info("Merge in progress elsewhere; skipping recovery", extra={"holder": exc.holder, "pid": exc.pid})
            return []
        try:
            try:
                workdir = await self._workspace()
            except WorkspaceError as exc:
                logger.warning("Merge workspace unavailable during recovery", extra={"error": str(exc)})
                workdir = self._settings.project_root
            return [await self._recover_entry(entry, workdir) for entry in stuck]
        finally:
            lock.release()

    async def _recover_entry(self, entry: QueueEntry, workdir: Path) -> RecoveryAction:
        name = entry.operation
        branch = name
        record = self._machine.store.get(name) if entry.merge_kind == MergeKind.OPERATION else None
        if record is None and entry.merge_kind == MergeKind.OPERATION and not looks_like_branch(name):
            self._queue.remove(name)
            logger.warning("Dropped queue entry without a state record", extra={"operation": name})
            return RecoveryAction(operation=name, action="removed")
        if record is not None:
            branch = record.branch or await self._readiness.resolve_branch(record) or ""

        merged = False
        if branch:
            try:
                merged = await self._git.is_ancestor(
                    f"{self._settings.git_remote}/{branch}", self._settings.remote_develop, workdir
                )
            except GitCommandError as exc:
                logger.warning("Recovery ancestry check failed", extra={"operation": name, "error": str(exc)})

        if merged:
            self._queue.update(name, EntryStatus.COMPLETED, reason="recovered: already merged")
            if record is not None and record.phase != Phase.MERGED:
                if record.phase == Phase.CONFLICT:
                    self._machine.transition(name, Phase.PENDING_MERGE)
                self._machine.mark_merged(name)
            logger.info("Recovered merged entry", extra={"operation": name})
            return RecoveryAction(operation=name, action="completed")

        self._queue.update(name, EntryStatus.PENDING, reason="recovered: processing -> pending")
        logger.info("Recovered stuck entry", extra={"operation": name})
        return RecoveryAction(operation=name, action="pending")

    async def _retry_conflicts(self, report: CycleReport, workdir: Path) -> None:
        limit = self._settings.conflict_retry_limit
        for entry in self._queue.with_status(EntryStatus.CONFLICT):
            if entry.conflict_retries >= limit:
                continue
            record = self._machine.store.get(entry.operation) if entry.merge_kind == MergeKind.OPERATION else None
            await self._resolve(entry, record, workdir)
            self._queue.update(
                entry.operation,
                EntryStatus.PENDING,
                conflict_retries=entry.conflict_retries + 1,
                reason=None,
            )
            if record is not None and record.phase == Phase.CONFLICT:
                self._machine.transition(entry.operation, Phase.PENDING_MERGE)
            report.retried.append(entry.operation)
            logger.info(
                "Retrying conflicted merge",
                extra={"operation": entry.operation, "attempt": entry.conflict_retries + 1, "limit": limit},
            )

    def resolve_session_name(self, name: str) -> str:
        return f"convoy-{self._settings.project}-resolve-{name.replace('/', '-')}"

    async def _resolve(self, entry: QueueEntry, record: Operation | None, workdir: Path) -> bool:
        """Run the conflict resolution session for ``entry`` and wait for it to exit.

        The session works in the operation's worktree, or in the merge workspace
        for bare branches. Returns False when nothing ran to completion; the
        entry is retried either way and the merge itself decides.
        """

        template = self._settings.resolve_command
        if not template:
            logger.info("No resolve command configured; retrying merge as is", extra={"operation": entry.operation})
            return False
        cwd = workdir
        branch = entry.operation
        if record is not None:
            branch = record.branch or branch
            if record.worktree and Path(record.worktree).is_dir():
                cwd = Path(record.worktree)
        command = render_command(
            template,
            name=shlex.quote(entry.operation),
            branch=shlex.quote(branch),
            worktree=shlex.quote(str(cwd)),
            project=shlex.quote(self._settings.project),
        )
        session = self.resolve_session_name(entry.operation)
        if await self._sessions.exists(session):
            await self._sessions.kill(session)
        try:
            await self._sessions.launch(session, cwd, command)
        except SessionError as exc:
            logger.warning("Resolve session failed to start", extra={"operation": entry.operation, "error": str(exc)})
            return False
        logger.info("Resolving merge conflict", extra={"operation": entry.operation, "session": session, "cwd": str(cwd)})

        waited = 0.0
        while await self._sessions.exists(session):
            if waited >= self._settings.resolve_timeout:
                logger.warning(
                    "Resolve session timed out",
                    extra={"operation": entry.operation, "session": session, "timeout": self._settings.resolve_timeout},
                )
                await self._sessions.kill(session)
                return False
            await self._sleep(RESOLVE_POLL_INTERVAL)
            waited += RESOLVE_POLL_INTERVAL
        return True

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        try:
            workdir = await self._workspace()
        except WorkspaceError as exc:
            logger.error("Merge workspace unavailable", extra={"error": str(exc)})
            return report
        await self._retry_conflicts(report, workdir)

        try:
            await self._git.fetch(workdir, prune=True)
        except GitCommandError as exc:
            logger.warning("fetch --prune failed", extra={"error": str(exc)})

        for entry in self._queue.pending():
            try:
                if await self._handle_entry(entry, report):
                    break
            except Exception as exc:
                logger.exception("Failed to handle queue entry", extra={"operation": entry.operation})
                current = self._queue.find(entry.operation)
                status = EntryStatus.PENDING if current is not None and current.status == EntryStatus.PROCESSING else None
                self._queue.update(entry.operation, status, reason=f"error:{exc}")
                report.skipped[entry.operation] = f"error:{exc}"

        for operation, reason in list(report.skipped.items())[:MAX_LOGGED_REASONS]:
            logger.info("Entry not ready", extra={"operation": operation, "reason": reason})
        return report

    async def _handle_entry(self, entry: QueueEntry, report: CycleReport) -> bool:
        """Handle one pending entry; return True when the cycle should end."""

        name = entry.operation
        verdict = await self._readiness.check_stale(entry)
        if verdict.stale:
            self._queue.update(name, EntryStatus.COMPLETED, reason=verdict.reason)
            report.stale.append(name)
            logger.info("Removed stale entry", extra={"operation": name, "reason": verdict.reason})
            return False
        if verdict.ambiguous:
            report.skipped[name] = f"error:{verdict.reason}"
            return False

        readiness = await self._readiness.check(entry)
        if not readiness.ready:
            reason = readiness.reason or "unknown"
            report.skipped[name] = reason
            if reason.startswith("open_issues:"):
                await self._resume_for_open_issues(entry, reason, report)
            elif reason in {"worktree:missing", "branch:missing"}:
                self._flag_missing_workspace(entry, reason)
            return False

        outcome = await self._processor.process(entry)
        report.processed = outcome
        report.operation = name
        return True

    async def _resume_for_open_issues(self, entry: QueueEntry, reason: str, report: CycleReport) -> None:
        name = entry.operation
        record = self._machine.get(name)
        spent = int(record.payload.get("merge_resume_count", 0) or 0)
        if spent >= self._settings.issue_resume_limit:
            logger.warning(
                "Operation has open issues and its automatic resume is spent; needs manual action",
                extra={"operation": name, "reason": reason},
            )
            return
        payload = {**record.payload, "merge_resume_count": spent + 1}
        resumed = self._machine.update(name, merge_resumed=True, merge_queued=False, payload=payload)
        self._queue.update(name, EntryStatus.RESUMED, reason=reason)
        self._machine.store.append_event(name, "merge:resumed", {"reason": reason})
        report.resumed.append(name)
        logger.info("Resuming operation to finish open issues", extra={"operation": name, "reason": reason})
        await self._launcher.relaunch(resumed)

    def _flag_missing_workspace(self, entry: QueueEntry, reason: str) -> None:
        record = self._machine.store.get(entry.operation) if entry.merge_kind == MergeKind.OPERATION else None
        if record is None or record.worktree_missing:
            return
        self._machine.update(entry.operation, worktree_missing=True)
        logger.warning(
            "Operation workspace missing; needs manual recovery",
            extra={"operation": entry.operation, "reason": reason},
        )

    def maybe_prune(self) -> list[QueueEntry]:
        now = self._clock()
        if self._last_prune is not None:
            elapsed = (now - self._last_prune).total_seconds()
            if elapsed < self._settings.prune_interval:
                return []
        self._last_prune = now
        return self._queue.prune(now=now)

    async def run(self, max_cycles: int | None = None) -> int:
        await self.recover()
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.maybe_prune()
            except Exception:
                logger.exception("Queue pruning failed")
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Merge cycle failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await self._sleep(self._settings.merge_poll_interval)
        return cycles


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the convoy merge queue daemon")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--recover-only", action="store_true", help="Recover stuck entries and exit")
    parser.add_argument("--log-level", help="Override CONVOY_LOG_LEVEL")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging((args.log_level or settings.log_level).upper(), settings.mergeq_log_file)

    runtime = build_runtime(settings, holder="mergeq")
    daemon = MergeDaemon(runtime)
    logger.info("Starting merge daemon", extra={"project": settings.project, "once": args.once})
    if args.recover_only:
        actions = asyncio.run(daemon.recover())
        for action in actions:
            print(f"{action.operation}: {action.action}")
        return
    try:
        asyncio.run(daemon.run(max_cycles=1 if args.once else None))
    except KeyboardInterrupt:
        logger.info("Merge daemon interrupted")
        raise SystemExit(130)


__all__ = ["CycleReport", "MergeDaemon", "RecoveryAction", "build_parser", "main"]


if __name__ == "__main__":
    main()
