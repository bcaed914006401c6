"""Version-control collaborator.

:class:`GitClient` wraps the ``git`` executable. Queries that answer yes/no
(``ls-remote``, ``show-ref``, ``merge-base --is-ancestor``) return a bool for a
definite answer and raise :class:`GitCommandError` when git itself failed, so
callers never mistake a broken query for "the branch is gone".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .runner import CommandError, CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class GitCommandError(CommandError):
    """Raised when a git command fails to execute or exits with an unexpected status."""


@dataclass(slots=True)
class MergeAttempt:
    """Outcome of ``git merge``: merged, conflict or error."""

    status: str
    detail: str = ""
    conflicted: list[str] = field(default_factory=list)

    @property
    def merged(self) -> bool:
        return self.status == "merged"

    @property
    def conflict(self) -> bool:
        return self.status == "conflict"


class Git(Protocol):
    async def fetch(self, cwd: Path, *refs: str, prune: bool = False) -> None: ...

    async def remote_branch_exists(self, branch: str, cwd: Path) -> bool: ...

    async def ref_exists(self, ref: str, cwd: Path) -> bool: ...

    async def is_ancestor(self, commit: str, ref: str, cwd: Path) -> bool: ...

    async def rev_parse(self, ref: str, cwd: Path) -> str: ...

    async def checkout(self, branch: str, cwd: Path) -> None: ...

    async def pull_ff_only(self, cwd: Path) -> None: ...

    async def abort_in_progress(self, cwd: Path) -> None: ...

    async def merge(self, ref: str, cwd: Path) -> MergeAttempt: ...

    async def push(self, cwd: Path, refspec: str, *, set_upstream: bool = False) -> None: ...

    async def delete_remote_branch(self, branch: str, cwd: Path) -> None: ...

    async def status_porcelain(self, cwd: Path) -> list[str]: ...

    async def count_commits(self, revision_range: str, cwd: Path) -> int: ...

    async def worktree_add(
        self, path: Path, branch: str, cwd: Path, *, start_point: str | None = None
    ) -> None: ...

    async def worktree_remove(self, path: Path, cwd: Path) -> None: ...

    async def delete_branch(self, branch: str, cwd: Path) -> None: ...

    async def reset_hard(self, ref: str, cwd: Path) -> None: ...

    async def clone(self, source: Path, dest: Path) -> None: ...

    async def common_dir(self, cwd: Path) -> Path: ...

    async def current_branch(self, cwd: Path) -> str: ...

    async def checkout_new(self, branch: str, start_point: str, cwd: Path) -> None: ...

    async def remote_url(self, cwd: Path) -> str | None: ...

    async def set_remote_url(self, url: str, cwd: Path) -> None: ...


class GitClient:
    """Run git through a :class:`CommandRunner`."""

    def __init__(self, runner: CommandRunner | None = None, *, remote: str = "origin", develop: str = "main") -> None:
        self._runner = runner or CommandRunner("git")
        self._remote = remote
        self._develop = develop

    @property
    def runner(self) -> CommandRunner:
        return self._runner

    async def _run(self, *args: str, cwd: Path | None = None) -> CommandResult:
        return await self._runner.run(*args, cwd=cwd)

    async def _check(self, *args: str, cwd: Path | None = None) -> CommandResult:
        result = await self._run(*args, cwd=cwd)
        if not result.ok:
            raise GitCommandError(f"git {' '.join(args)} failed ({result.describe()})", result)
        return result

    async def _yes_no(self, *args: str, cwd: Path | None = None) -> bool:
        """Run a yes/no query where exit 1 means "no" and anything else is an error."""

        result = await self._run(*args, cwd=cwd)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise GitCommandError(f"git {' '.join(args)} failed ({result.describe()})", result)

    async def fetch(self, cwd: Path, *refs: str, prune: bool = False) -> None:
        args = ["fetch", self._remote, *refs]
        if prune:
            args.append("--prune")
        await self._check(*args, cwd=cwd)

    async def remote_branch_exists(self, branch: str, cwd: Path) -> bool:
        result = await self._check("ls-remote", "--heads", self._remote, branch, cwd=cwd)
        return bool(result.stdout.strip())

    async def ref_exists(self, ref: str, cwd: Path) -> bool:
        return await self._yes_no("show-ref", "--verify", "--quiet", ref, cwd=cwd)

    async def is_ancestor(self, commit: str, ref: str, cwd: Path) -> bool:
        return await self._yes_no("merge-base", "--is-ancestor", commit, ref, cwd=cwd)

    async def rev_parse(self, ref: str, cwd: Path) -> str:
        result = await self._check("rev-parse", ref, cwd=cwd)
        return result.stdout.strip()

    async def checkout(self, branch: str, cwd: Path) -> None:
        await self._check("checkout", branch, cwd=cwd)

    async def pull_ff_only(self, cwd: Path) -> None:
        await self._check("pull", "--ff-only", self._remote, self._develop, cwd=cwd)

    async def abort_in_progress(self, cwd: Path) -> None:
        git_dir = Path(await self.rev_parse("--git-dir", cwd))
        if not git_dir.is_absolute():
            git_dir = Path(cwd) / git_dir
        if (git_dir / "MERGE_HEAD").exists():
            logger.warning("Aborting incomplete merge", extra={"cwd": str(cwd)})
            await self._run("merge", "--abort", cwd=cwd)
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            logger.warning("Aborting incomplete rebase", extra={"cwd": str(cwd)})
            await self._run("rebase", "--abort", cwd=cwd)

    async def merge(self, ref: str, cwd: Path) -> MergeAttempt:
        result = await self._run("merge", "--no-edit", ref, cwd=cwd)
        if result.ok:
            return MergeAttempt(status="merged", detail=result.stdout.strip())
        unmerged = await self._run("diff", "--name-only", "--diff-filter=U", cwd=cwd)
        files = [line for line in unmerged.stdout.splitlines() if line.strip()]
        if files:
            await self._run("merge", "--abort", cwd=cwd)
            return MergeAttempt(status="conflict", detail=result.describe(), conflicted=files)
        return MergeAttempt(status="error", detail=result.describe())

    async def push(self, cwd: Path, refspec: str, *, set_upstream: bool = False) -> None:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([self._remote, refspec])
        await self._check(*args, cwd=cwd)

    async def delete_remote_branch(self, branch: str, cwd: Path) -> None:
        await self._check("push", self._remote, "--delete", branch, cwd=cwd)

    async def status_porcelain(self, cwd: Path) -> list[str]:
        result = await self._check("status", "--porcelain", "--untracked-files=no", cwd=cwd)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def count_commits(self, revision_range: str, cwd: Path) -> int:
        result = await self._check("rev-list", "--count", revision_range, cwd=cwd)
        try:
            return int(result.stdout.strip() or 0)
        except ValueError as exc:
            raise GitCommandError(f"Unexpected rev-list output: {result.stdout!r}", result) from exc

    async def worktree_add(
        self, path: Path, branch: str, cwd: Path, *, start_point: str | None = None
    ) -> None:
        if start_point is not None:
            await self._check("worktree", "add", "-b", branch, str(path), start_point, cwd=cwd)
        else:
            await self._check("worktree", "add", str(path), branch, cwd=cwd)

    async def worktree_remove(self, path: Path, cwd: Path) -> None:
        await self._check("worktree", "remove", "--force", str(path), cwd=cwd)

    async def delete_branch(self, branch: str, cwd: Path) -> None:
        await self._check("branch", "-D", branch, cwd=cwd)

    async def reset_hard(self, ref: str, cwd: Path) -> None:
        await self._check("reset", "--hard", ref, cwd=cwd)

    async def clone(self, source: Path, dest: Path) -> None:
        await self._check("clone", str(source), str(dest))

    async def common_dir(self, cwd: Path) -> Path:
        raw = Path(await self.rev_parse("--git-common-dir", cwd))
        return raw if raw.is_absolute() else (Path(cwd) / raw).resolve()

    async def current_branch(self, cwd: Path) -> str:
        result = await self._check("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        return result.stdout.strip()

    async def checkout_new(self, branch: str, start_point: str, cwd: Path) -> None:
        await self._check("checkout", "-B", branch, start_point, cwd=cwd)

    async def remote_url(self, cwd: Path) -> str | None:
        result = await self._run("remote", "get-url", self._remote, cwd=cwd)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def set_remote_url(self, url: str, cwd: Path) -> None:
        await self._check("remote", "set-url", self._remote, url, cwd=cwd)


class FakeGit:
    """In-memory git used by tests.

    Remote branches map to their tip commit; ``develop_commits`` holds every
    commit reachable from the remote develop branch.
    """

    def __init__(self, *, remote: str = "origin", develop: str = "main") -> None:
        self.remote = remote
        self.develop = develop
        self.remote_branches: dict[str, str] = {}
        self.local_refs: set[str] = set()
        self.develop_commits: set[str] = {"base"}
        self.merge_outcomes: dict[str, list[str]] = {}
        self.commits_ahead: dict[str, int] = {}
        self.dirty: dict[str, list[str]] = {}
        self.checked_out: dict[str, str] = {}
        self.url: str | None = "git@example.com:acme/app.git"
        self.fail_queries = False
        self.fail_fetch = False
        self.fail_push = False
        self.fail_worktree_add = False
        self.head = "base"
        self.calls: list[tuple[str, ...]] = []
        self._pending_commit: str | None = None

    def _record(self, *call: str) -> None:
        self.calls.append(tuple(call))

    def _query_guard(self, *call: str) -> None:
        if self.fail_queries:
            raise GitCommandError(f"git {' '.join(call)} failed (exit 128: unable to access remote)")

    def _branch_of(self, ref: str) -> str:
        prefix = f"{self.remote}/"
        return ref[len(prefix):] if ref.startswith(prefix) else ref

    def calls_named(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call and call[0] == name]

    async def fetch(self, cwd: Path, *refs: str, prune: bool = False) -> None:
        self._record("fetch", *refs, *(["--prune"] if prune else []))
        self._query_guard("fetch")
        if self.fail_fetch:
            raise GitCommandError("git fetch failed (exit 128: could not read from remote)")

    async def remote_branch_exists(self, branch: str, cwd: Path) -> bool:
        self._record("ls-remote", branch)
        self._query_guard("ls-remote", branch)
        return branch in self.remote_branches

    async def ref_exists(self, ref: str, cwd: Path) -> bool:
        self._record("show-ref", ref)
        self._query_guard("show-ref", ref)
        remote_prefix = f"refs/remotes/{self.remote}/"
        if ref.startswith(remote_prefix):
            return ref[len(remote_prefix):] in self.remote_branches
        return ref in self.local_refs

    async def is_ancestor(self, commit: str, ref: str, cwd: Path) -> bool:
        self._record("merge-base", commit, ref)
        self._query_guard("merge-base", commit, ref)
        branch = self._branch_of(commit)
        tip = self.remote_branches.get(branch, commit)
        return tip in self.develop_commits

    async def rev_parse(self, ref: str, cwd: Path) -> str:
        self._record("rev-parse", ref)
        return self.head if ref == "HEAD" else self.remote_branches.get(self._branch_of(ref), ref)

    async def checkout(self, branch: str, cwd: Path) -> None:
        self._record("checkout", branch)
        self.checked_out[str(cwd)] = branch

    async def pull_ff_only(self, cwd: Path) -> None:
        self._record("pull")

    async def abort_in_progress(self, cwd: Path) -> None:
        self._record("abort")

    async def merge(self, ref: str, cwd: Path) -> MergeAttempt:
        self._record("merge", ref)
        branch = self._branch_of(ref)
        outcomes = self.merge_outcomes.get(branch)
        outcome = outcomes.pop(0) if outcomes else "merged"
        if outcome == "conflict":
            return MergeAttempt(status="conflict", detail="CONFLICT (content)", conflicted=["file.txt"])
        if outcome != "merged":
            return MergeAttempt(status="error", detail=outcome)
        self.head = f"merge-{branch}-{len(self.calls_named('merge'))}"
        self._pending_commit = self.head
        return MergeAttempt(status="merged")

    async def push(self, cwd: Path, refspec: str, *, set_upstream: bool = False) -> None:
        self._record("push", refspec)
        if self.fail_push:
            raise GitCommandError(f"git push {refspec} failed (exit 1: rejected)")
        if refspec == self.develop and self._pending_commit is not None:
            self.develop_commits.add(self._pending_commit)
            self._pending_commit = None
        elif refspec != self.develop:
            self.remote_branches.setdefault(refspec, f"tip-{refspec}")

    async def delete_remote_branch(self, branch: str, cwd: Path) -> None:
        self._record("push-delete", branch)
        self.remote_branches.pop(branch, None)

    async def status_porcelain(self, cwd: Path) -> list[str]:
        self._record("status", str(cwd))
        return list(self.dirty.get(str(cwd), []))

    async def count_commits(self, revision_range: str, cwd: Path) -> int:
        self._record("rev-list", revision_range, str(cwd))
        self._query_guard("rev-list", revision_range)
        return self.commits_ahead.get(str(cwd), 0)

    async def worktree_add(
        self, path: Path, branch: str, cwd: Path, *, start_point: str | None = None
    ) -> None:
        self._record("worktree-add", str(path), branch)
        if self.fail_worktree_add:
            raise GitCommandError(f"git worktree add {path} failed (exit 128: '{branch}' is already checked out)")
        Path(path).mkdir(parents=True, exist_ok=True)
        (Path(path) / ".git").touch()
        self.local_refs.add(f"refs/heads/{branch}")

    async def worktree_remove(self, path: Path, cwd: Path) -> None:
        self._record("worktree-remove", str(path))
        target = Path(path)
        if target.exists():
            for child in sorted(target.rglob("*"), reverse=True):
                child.unlink() if child.is_file() else child.rmdir()
            target.rmdir()

    async def delete_branch(self, branch: str, cwd: Path) -> None:
        self._record("branch-delete", branch)
        self.local_refs.discard(f"refs/heads/{branch}")

    async def reset_hard(self, ref: str, cwd: Path) -> None:
        self._record("reset", ref, str(cwd))
        self.commits_ahead[str(cwd)] = 0

    async def clone(self, source: Path, dest: Path) -> None:
        self._record("clone", str(source), str(dest))
        Path(dest).mkdir(parents=True, exist_ok=True)
        (Path(dest) / ".git").touch()

    async def common_dir(self, cwd: Path) -> Path:
        self._record("common-dir", str(cwd))
        return Path(cwd) / ".git"

    async def current_branch(self, cwd: Path) -> str:
        self._record("current-branch", str(cwd))
        return self.checked_out.get(str(cwd), "HEAD")

    async def checkout_new(self, branch: str, start_point: str, cwd: Path) -> None:
        self._record("checkout-new", branch, start_point)
        self.local_refs.add(f"refs/heads/{branch}")

    async def remote_url(self, cwd: Path) -> str | None:
        return self.url

    async def set_remote_url(self, url: str, cwd: Path) -> None:
        self._record("set-url", url)


__all__ = ["FakeGit", "Git", "GitClient", "GitCommandError", "MergeAttempt"]
