"""Relaunch operations that the merge daemon sends back to work."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Protocol

from ..state.models import Operation
from .sessions import SessionHost
from .utils import render_command

logger = logging.getLogger(__name__)


class Launcher(Protocol):
    async def relaunch(self, operation: Operation) -> bool: ...


class CommandLauncher:
    """Run the configured resume command for an operation in a detached session.

    The template may reference ``{name}``, ``{worktree}``, ``{branch}`` and
    ``{project}``; values are shell-quoted before substitution and any other
    braces are kept as written.
    """

    def __init__(self, sessions: SessionHost, template: str | None, *, project: str) -> None:
        self._sessions = sessions
        self._template = template
        self._project = project

    def session_name(self, operation: Operation) -> str:
        return f"convoy-{self._project}-{operation.name}"

    def render(self, operation: Operation) -> str | None:
        if not self._template:
            return None
        return render_command(
            self._template,
            name=shlex.quote(operation.name),
            worktree=shlex.quote(operation.worktree or ""),
            branch=shlex.quote(operation.branch or ""),
            project=shlex.quote(self._project),
        )

    async def relaunch(self, operation: Operation) -> bool:
        command = self.render(operation)
        if command is None:
            logger.warning(
                "No resume command configured; operation must be resumed manually",
                extra={"operation": operation.name},
            )
            return False
        cwd = Path(operation.worktree) if operation.worktree else Path.cwd()
        await self._sessions.launch(self.session_name(operation), cwd, command)
        return True


class FakeLauncher:
    def __init__(self, *, result: bool = True) -> None:
        self.relaunched: list[str] = []
        self._result = result

    async def relaunch(self, operation: Operation) -> bool:
        self.relaunched.append(operation.name)
        return self._result


__all__ = ["CommandLauncher", "FakeLauncher", "Launcher"]
