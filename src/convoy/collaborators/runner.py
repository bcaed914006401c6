"""Async runner for collaborator command-line tools."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from .utils import first_line, sanitize_environment


class CommandError(RuntimeError):
    """Base class for collaborator command errors."""

    def __init__(self, message: str, result: "CommandResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class CommandNotFoundError(CommandError):
    """Raised when a collaborator executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of one command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = first_line(self.stderr) or first_line(self.stdout)
        return f"exit {self.returncode}: {detail}" if detail else f"exit {self.returncode}"


class CommandRunner:
    """Execute one collaborator executable asynchronously."""

    def __init__(self, name: str, executable: Path | str | None = None) -> None:
        self._name = name
        self._executable_path = self._resolve_executable(name, executable)

    @staticmethod
    def _resolve_executable(name: str, explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            found = shutil.which(str(explicit))
            if found is not None:
                return Path(found)
            raise CommandNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise CommandNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def name(self) -> str:
        return self._name

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        return await self._invoke(*args, cwd=cwd, env=env)

    async def _invoke(
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=sanitize_environment(env),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


Responder = Callable[[tuple[str, ...]], CommandResult | None]


class FakeCommandRunner(CommandRunner):
    """Test double that replays canned results and records invocations."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        name: str = "fake",
        responder: Responder | None = None,
    ) -> None:
        self._name = name
        self._responses = list(responses or [])
        self._responder = responder
        self._invocations: list[tuple[str, ...]] = []
        self._cwds: list[str | None] = []
        self._executable_path = Path(f"/tmp/fake-{name}")

    async def _invoke(  # type: ignore[override]
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        self._invocations.append(tuple(args))
        self._cwds.append(str(cwd) if cwd is not None else None)
        if self._responder is not None:
            result = self._responder(tuple(args))
            if result is not None:
                return result
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def cwds(self) -> list[str | None]:
        return self._cwds


__all__ = [
    "CommandError",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
]
