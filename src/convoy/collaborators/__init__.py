"""Adapters for the external tools convoy drives: git, tmux, the tracker and agent relaunches."""

from .git import FakeGit, Git, GitClient, GitCommandError, MergeAttempt
from .launcher import CommandLauncher, FakeLauncher, Launcher
from .runner import (
    CommandError,
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
)
from .sessions import FakeSessionHost, SessionError, SessionHost, TmuxSessionHost
from .tracker import FakeTracker, Tracker, TrackerError, TrackerItem, WkTracker

__all__ = [
    "CommandError",
    "CommandLauncher",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "FakeGit",
    "FakeLauncher",
    "FakeSessionHost",
    "FakeTracker",
    "Git",
    "GitClient",
    "GitCommandError",
    "Launcher",
    "MergeAttempt",
    "SessionError",
    "SessionHost",
    "TmuxSessionHost",
    "Tracker",
    "TrackerError",
    "TrackerItem",
    "WkTracker",
]
