"""Advisory file locks with liveness-based staleness detection.

A lock is a marker file whose content names the holder and its pid, for
example ``mergeq (pid 4242)``. Acquisition is non-blocking: a live holder makes
``acquire`` raise :class:`LockHeldError` immediately, while a holder whose pid
is no longer running is treated as stale and reclaimed.

Every acquired lock is released on normal exit, on KeyboardInterrupt and on
SIGTERM or SIGHUP. A holder killed with SIGKILL leaves its file behind, but
the recorded pid is dead, so the next acquirer reclaims it right away.
"""

from __future__ import annotations

import atexit
import logging
import os
import re
import signal
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

_PID_PATTERN = re.compile(r"^(?P<holder>.*?)\s*\(pid (?P<pid>\d+)\)\s*$")


class LockError(RuntimeError):
    """Base class for lock errors."""


class LockHeldError(LockError):
    """Raised when a lock is held by a live process."""

    def __init__(self, path: Path, holder: str, pid: int | None) -> None:
        self.path = path
        self.holder = holder
        self.pid = pid
        detail = f"{holder} (pid {pid})" if pid is not None else holder
        super().__init__(f"Lock {path.name} held by {detail}")


class LivenessChecker(Protocol):
    """Answers whether a recorded process id still refers to a running process."""

    def is_alive(self, pid: int) -> bool:
        ...


class ProcessLiveness:
    """POSIX liveness check using signal 0."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The pid exists but belongs to another user.
            return True
        return True


@dataclass(slots=True)
class LockInfo:
    holder: str
    pid: int | None

    @classmethod
    def parse(cls, content: str) -> "LockInfo":
        text = content.strip()
        match = _PID_PATTERN.match(text)
        if match is None:
            return cls(holder=text or "unknown", pid=None)
        return cls(holder=match.group("holder") or "unknown", pid=int(match.group("pid")))

    def render(self) -> str:
        return f"{self.holder} (pid {self.pid})\n"


class FileLock:
    """Exclusive, named, process-scoped claim backed by a marker file."""

    def __init__(
        self,
        path: Path,
        holder: str,
        *,
        liveness: LivenessChecker | None = None,
        pid: int | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._path = Path(path)
        self._holder = holder
        self._liveness = liveness or ProcessLiveness()
        self._pid = pid if pid is not None else os.getpid()
        self._sleep = sleep or time.sleep
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def read_info(self) -> LockInfo | None:
        try:
            return LockInfo.parse(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def is_stale(self) -> bool:
        """Return True when the lock file exists and its recorded process is gone."""

        info = self.read_info()
        if info is None or info.pid is None:
            return False
        return not self._liveness.is_alive(info.pid)

    def acquire(self) -> None:
        """Take the lock without waiting, reclaiming it if the holder is dead."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        content = LockInfo(self._holder, self._pid).render()
        for _ in range(2):
            if self._try_create(content):
                self._held = True
                _register(self)
                return
            info = self.read_info()
            if info is None:
                continue
            if info.pid is not None and not self._liveness.is_alive(info.pid):
                self._reclaim(info)
                continue
            raise LockHeldError(self._path, info.holder, info.pid)
        info = self.read_info() or LockInfo("unknown", None)
        raise LockHeldError(self._path, info.holder, info.pid)

    def acquire_with_retry(self, attempts: int, delay: float) -> None:
        """Poll for the lock, doubling the delay between attempts."""

        wait = delay
        for attempt in range(1, attempts + 1):
            try:
                self.acquire()
                return
            except LockHeldError:
                if attempt == attempts:
                    raise
                logger.debug(
                    "Lock busy, retrying",
                    extra={"lock": str(self._path), "attempt": attempt, "delay": wait},
                )
                self._sleep(wait)
                wait *= 2

    def release(self) -> None:
        """Remove the lock file if this process still owns it."""

        if not self._held:
            return
        self._held = False
        _unregister(self)
        info = self.read_info()
        if info is not None and info.pid != self._pid:
            logger.warning(
                "Lock file owned by another process; leaving it in place",
                extra={"lock": str(self._path), "pid": info.pid},
            )
            return
        self._path.unlink(missing_ok=True)

    def _reclaim(self, stale: LockInfo) -> None:
        """Remove a dead holder's file without touching a lock taken meanwhile.

        The file is first moved aside under a unique name. If the moved file no
        longer names the dead holder, another process reclaimed the lock between
        our liveness check and the move, so the file is put back and the lock is
        reported as held.
        """

        tombstone = self._path.with_name(f".{self._path.name}.stale.{os.getpid()}.{uuid.uuid4().hex}")
        try:
            os.rename(self._path, tombstone)
        except FileNotFoundError:
            return
        try:
            moved = LockInfo.parse(tombstone.read_text(encoding="utf-8"))
            if moved != stale:
                try:
                    os.link(tombstone, self._path)
                except FileExistsError:
                    logger.warning(
                        "Lock replaced while restoring a live holder",
                        extra={"lock": str(self._path), "holder": moved.holder, "pid": moved.pid},
                    )
                raise LockHeldError(self._path, moved.holder, moved.pid)
            logger.warning(
                "Reclaiming stale lock",
                extra={"lock": str(self._path), "holder": stale.holder, "pid": stale.pid},
            )
        finally:
            tombstone.unlink(missing_ok=True)

    def _try_create(self, content: str) -> bool:
        # Write the full marker first and hard-link it into place, so no reader
        # ever sees an empty lock file.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            try:
                os.link(tmp_name, self._path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_name)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"FileLock(path={str(self._path)!r}, holder={self._holder!r}, held={self._held})"


_held_locks: list[FileLock] = []
_registry_guard = threading.Lock()
_cleanup_installed = False
_CLEANUP_SIGNALS = ("SIGTERM", "SIGHUP")


def release_all() -> None:
    """Release every lock this process currently holds."""

    with _registry_guard:
        locks = list(_held_locks)
    for lock in locks:
        lock.release()


def _handle_signal(signum: int, frame: object) -> None:
    release_all()
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)


def _install_cleanup() -> None:
    global _cleanup_installed
    if _cleanup_installed:
        return
    _cleanup_installed = True
    atexit.register(release_all)
    if threading.current_thread() is not threading.main_thread():
        return
    for name in _CLEANUP_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        if signal.getsignal(signum) == signal.SIG_DFL:
            signal.signal(signum, _handle_signal)


def _register(lock: FileLock) -> None:
    with _registry_guard:
        _install_cleanup()
        if lock not in _held_locks:
            _held_locks.append(lock)


def _unregister(lock: FileLock) -> None:
    with _registry_guard:
        if lock in _held_locks:
            _held_locks.remove(lock)


__all__ = [
    "FileLock",
    "LivenessChecker",
    "LockError",
    "LockHeldError",
    "LockInfo",
    "ProcessLiveness",
    "release_all",
]
