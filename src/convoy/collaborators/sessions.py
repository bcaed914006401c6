"""Terminal multiplexer sessions that host agent runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)


class SessionError(CommandError):
    """Raised when a session cannot be launched or inspected."""


class SessionHost(Protocol):
    async def launch(self, name: str, cwd: Path, command: str) -> None: ...

    async def exists(self, name: str) -> bool: ...

    async def kill(self, name: str) -> None: ...


class TmuxSessionHost:
    """Launch detached tmux sessions and poll for their presence."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner("tmux")

    async def launch(self, name: str, cwd: Path, command: str) -> None:
        result = await self._runner.run("new-session", "-d", "-s", name, "-c", str(cwd), command)
        if not result.ok:
            raise SessionError(f"Failed to launch session {name} ({result.describe()})", result)
        logger.info("Session launched", extra={"session": name, "cwd": str(cwd)})

    async def exists(self, name: str) -> bool:
        result = await self._runner.run("has-session", "-t", name)
        return result.ok

    async def kill(self, name: str) -> None:
        result = await self._runner.run("kill-session", "-t", name)
        if not result.ok:
            logger.debug("kill-session failed", extra={"session": name, "detail": result.describe()})


class FakeSessionHost:
    """Sessions live until a test ends them with :meth:`finish`."""

    def __init__(self, *, launch_failures: int = 0) -> None:
        self.live: set[str] = set()
        self.launches: list[tuple[str, str, str]] = []
        self.killed: list[str] = []
        self.launch_failures = launch_failures

    async def launch(self, name: str, cwd: Path, command: str) -> None:
        self.launches.append((name, str(cwd), command))
        if self.launch_failures > 0:
            self.launch_failures -= 1
            raise SessionError(f"Failed to launch session {name} (exit 1: server exited)")
        self.live.add(name)

    async def exists(self, name: str) -> bool:
        return name in self.live

    async def kill(self, name: str) -> None:
        self.killed.append(name)
        self.live.discard(name)

    def finish(self, name: str) -> None:
        self.live.discard(name)


__all__ = ["FakeSessionHost", "SessionError", "SessionHost", "TmuxSessionHost"]
