"""Wire settings into the collaborators and services each entry point needs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .alerts import AlertSink
from .collaborators.git import Git, GitClient
from .collaborators.launcher import CommandLauncher, Launcher
from .collaborators.runner import CommandRunner
from .collaborators.sessions import SessionHost, TmuxSessionHost
from .collaborators.tracker import Tracker, WkTracker
from .config import ConvoySettings
from .locking import LivenessChecker
from .mergeq.processing import MergeProcessor
from .mergeq.queue import MergeQueue
from .mergeq.readiness import ReadinessChecker
from .state.machine import StateMachine
from .state.store import StateStore
from .storage import ChromaStore, ChromaUnavailableError
from .timeutil import Clock
from .workspace import WorkspaceProvisioner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: ConvoySettings
    store: StateStore
    machine: StateMachine
    queue: MergeQueue
    git: Git
    sessions: SessionHost
    tracker: Tracker
    launcher: Launcher
    provisioner: WorkspaceProvisioner
    readiness: ReadinessChecker
    processor: MergeProcessor
    alerts: AlertSink
    audit_metadata: dict[str, Any] = field(default_factory=dict)


def open_audit_store(settings: ConvoySettings) -> tuple[ChromaStore | None, dict[str, Any]]:
    """Open the chroma audit store, returning None when chromadb is unavailable."""

    metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_path),
        "collection": "convoy_events",
        "error": None,
    }
    try:
        store = ChromaStore(settings.chroma_path)
        store.ping()
    except ChromaUnavailableError as exc:
        metadata["error"] = str(exc)
        logger.info("Audit store unavailable", extra={"error": str(exc)})
        return None, metadata
    metadata["available"] = True
    return store, metadata


def build_runtime(
    settings: ConvoySettings,
    *,
    git: Git | None = None,
    sessions: SessionHost | None = None,
    tracker: Tracker | None = None,
    launcher: Launcher | None = None,
    audit: ChromaStore | None = None,
    open_audit: bool = True,
    liveness: LivenessChecker | None = None,
    clock: Clock | None = None,
    holder: str = "convoy",
) -> Runtime:
    """Build every service from one settings object.

    Collaborators that are not injected are created against the real
    executables, so tests pass fakes and entry points pass nothing.
    """

    audit_metadata: dict[str, Any] = {"available": audit is not None, "error": None}
    if audit is None and open_audit:
        audit, audit_metadata = open_audit_store(settings)

    store = StateStore(settings.operations_dir, clock=clock)
    machine = StateMachine(store)
    git = git or GitClient(
        CommandRunner("git", settings.git_path),
        remote=settings.git_remote,
        develop=settings.develop_branch,
    )
    sessions = sessions or TmuxSessionHost(CommandRunner("tmux", settings.tmux_path))
    tracker = tracker or WkTracker(CommandRunner("wk", settings.tracker_path))
    launcher = launcher or CommandLauncher(sessions, settings.resume_command, project=settings.project)
    alerts = AlertSink(audit)

    queue = MergeQueue(settings, machine, clock=clock, liveness=liveness, holder=holder)
    provisioner = WorkspaceProvisioner(settings, git)
    readiness = ReadinessChecker(settings, machine, git, sessions, tracker)
    processor = MergeProcessor(
        settings,
        queue,
        readiness,
        git,
        tracker,
        provisioner,
        launcher,
        alerts=alerts,
        liveness=liveness,
        holder=holder,
    )
    return Runtime(
        settings=settings,
        store=store,
        machine=machine,
        queue=queue,
        git=git,
        sessions=sessions,
        tracker=tracker,
        launcher=launcher,
        provisioner=provisioner,
        readiness=readiness,
        processor=processor,
        alerts=alerts,
        audit_metadata=audit_metadata,
    )


__all__ = ["Runtime", "build_runtime", "open_audit_store"]
