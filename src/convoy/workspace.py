"""Per-operation working copies.

Workers get one directory per claimed item under ``<state_dir>/tree``. The
merge daemon works in a single long-lived checkout of the develop branch at
``settings.workspace_dir``. Both are created either as git worktrees of the
project root or as local clones, depending on ``settings.workspace_mode``.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .collaborators.git import Git, GitCommandError
from .config import PROTECTED_BRANCHES, ConvoySettings

logger = logging.getLogger(__name__)

GIT_DIR_MARKER = ".worker-git-dir"
BRANCH_MARKER = ".worker-branch"
PROJECT_ROOT_MARKER = ".worker-project-root"


class WorkspaceError(RuntimeError):
    """Raised when a workspace cannot be created, reset or removed."""


@dataclass(slots=True)
class Workspace:
    name: str
    path: Path
    branch: str


class WorkspaceProvisioner:
    def __init__(self, settings: ConvoySettings, git: Git) -> None:
        self._settings = settings
        self._git = git

    @property
    def root(self) -> Path:
        return self._settings.project_root

    def path_for(self, name: str) -> Path:
        return self._settings.tree_dir / name

    async def provision(self, name: str, branch: str, *, path: Path | None = None) -> Workspace:
        """Create a workspace for ``branch``, reusing the directory when it already exists."""

        workspace = Workspace(name=name, path=Path(path) if path else self.path_for(name), branch=branch)
        if workspace.path.is_dir() and any(workspace.path.iterdir()):
            logger.info("Reusing workspace", extra={"workspace": str(workspace.path), "branch": branch})
            return workspace

        workspace.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            if self._settings.workspace_mode == "clone":
                await self._clone(workspace.path)
                await self._git.fetch(workspace.path, self._settings.develop_branch)
                await self._git.checkout_new(branch, self._settings.remote_develop, workspace.path)
            elif await self._git.ref_exists(f"refs/heads/{branch}", self.root):
                await self._git.worktree_add(workspace.path, branch, self.root)
            else:
                await self._git.worktree_add(
                    workspace.path, branch, self.root, start_point=self._settings.remote_develop
                )
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to create workspace {workspace.path}: {exc}") from exc
        logger.info(
            "Workspace created",
            extra={"workspace": str(workspace.path), "branch": branch, "mode": self._settings.workspace_mode},
        )
        return workspace

    async def ensure_merge_workspace(self) -> Path:
        """Return the develop-branch checkout used for merges, creating it if needed."""

        directory = self._settings.workspace_dir
        if (directory / ".git").exists():
            return directory
        if directory.exists():
            logger.warning("Removing invalid merge workspace", extra={"workspace": str(directory)})
            shutil.rmtree(directory)
        directory.parent.mkdir(parents=True, exist_ok=True)
        develop = self._settings.develop_branch

        try:
            if self._settings.workspace_mode == "clone":
                await self._clone(directory)
                await self._git.checkout(develop, directory)
            else:
                if await self._git.current_branch(self.root) == develop:
                    raise WorkspaceError(
                        f"Cannot create worktree: {develop} is checked out in {self.root}; "
                        "check out another branch or set CONVOY_WORKSPACE_MODE=clone"
                    )
                await self._git.worktree_add(directory, develop, self.root)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to create merge workspace {directory}: {exc}") from exc
        logger.info("Merge workspace created", extra={"workspace": str(directory)})
        return directory

    async def _clone(self, destination: Path) -> None:
        await self._git.clone(self.root, destination)
        url = await self._git.remote_url(self.root)
        if url:
            await self._git.set_remote_url(url, destination)

    async def reset_to_develop(self, workspace: Workspace) -> str:
        """Check out the workspace branch and hard-reset it to the develop tip.

        Returns the ref that was used; the local develop branch stands in when
        the remote cannot be fetched.
        """

        target = self._settings.remote_develop
        try:
            await self._git.fetch(workspace.path, self._settings.develop_branch)
        except GitCommandError as exc:
            logger.warning(
                "Remote develop branch unavailable; using local",
                extra={"workspace": str(workspace.path), "error": str(exc)},
            )
            target = self._settings.develop_branch
        try:
            await self._git.checkout(workspace.branch, workspace.path)
            await self._git.reset_hard(target, workspace.path)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to reset {workspace.path} to {target}: {exc}") from exc
        return target

    async def write_markers(self, workspace: Workspace) -> None:
        git_dir = await self._git.common_dir(workspace.path)
        workspace.path.mkdir(parents=True, exist_ok=True)
        (workspace.path / GIT_DIR_MARKER).write_text(f"{git_dir}\n", encoding="utf-8")
        (workspace.path / BRANCH_MARKER).write_text(f"{workspace.branch}\n", encoding="utf-8")
        (workspace.path / PROJECT_ROOT_MARKER).write_text(f"{self.root}\n", encoding="utf-8")

    async def remove(self, workspace: Workspace) -> None:
        if workspace.path.exists():
            if self._settings.workspace_mode == "clone":
                shutil.rmtree(workspace.path)
            else:
                try:
                    await self._git.worktree_remove(workspace.path, self.root)
                except GitCommandError as exc:
                    raise WorkspaceError(f"Failed to remove worktree {workspace.path}: {exc}") from exc
                if workspace.path.exists():
                    shutil.rmtree(workspace.path)

        if workspace.branch in PROTECTED_BRANCHES or workspace.branch == self._settings.develop_branch:
            return
        try:
            await self._git.delete_branch(workspace.branch, self.root)
        except GitCommandError as exc:
            logger.warning(
                "Could not delete workspace branch",
                extra={"branch": workspace.branch, "error": str(exc)},
            )
        logger.info("Workspace removed", extra={"workspace": str(workspace.path), "branch": workspace.branch})


__all__ = [
    "BRANCH_MARKER",
    "GIT_DIR_MARKER",
    "PROJECT_ROOT_MARKER",
    "Workspace",
    "WorkspaceError",
    "WorkspaceProvisioner",
]
