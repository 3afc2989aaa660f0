"""Async git command wrapper bound to one working directory."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

from autodev.core.constants import GIT_TIMEOUT_SECONDS
from autodev.core.exceptions import GitError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Git:
    """Run ``git -C <path> ...`` with a per-command timeout.

    Instances are immutable; :meth:`at` gives a wrapper for another
    working directory (a worktree) with the same settings.
    """

    path: Path
    timeout: float = GIT_TIMEOUT_SECONDS
    remote: str = "origin"

    def at(self, path: Path | str) -> Git:
        return replace(self, path=Path(path))

    async def _exec(self, *args: str) -> tuple[int, str, str]:
        cmd = ["git", "-C", str(self.path), *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitError(f"Cannot run git: {exc}") from exc
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitError(f"git {' '.join(args)} timed out after {self.timeout:.0f}s") from None
        rc = proc.returncode if proc.returncode is not None else -1
        return rc, out.decode(errors="replace").rstrip(), err.decode(errors="replace").strip()

    async def run(self, *args: str) -> str:
        rc, out, err = await self._exec(*args)
        if rc != 0:
            raise GitError(f"git {' '.join(args)} failed (exit {rc}): {err or out}", stderr=err)
        logger.debug("git_ok", cwd=str(self.path), args=args[:3])
        return out

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def current_branch(self) -> str:
        return await self.run("rev-parse", "--abbrev-ref", "HEAD")

    async def checkout(self, branch: str) -> None:
        await self.run("checkout", branch)

    async def create_branch(self, branch: str, start: str | None = None) -> None:
        args = ["checkout", "-b", branch]
        if start:
            args.append(start)
        await self.run(*args)

    async def branch_exists(self, branch: str) -> bool:
        rc, _, _ = await self._exec("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return rc == 0

    async def remote_branch_exists(self, branch: str) -> bool:
        out = await self.run("ls-remote", "--heads", self.remote, branch)
        return bool(out)

    async def delete_branch(self, branch: str) -> None:
        await self.run("branch", "-D", branch)

    async def delete_remote_branch(self, branch: str) -> None:
        await self.run("push", self.remote, "--delete", branch)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def fetch(self, branch: str | None = None) -> None:
        await self.run("fetch", self.remote, *([branch] if branch else []))

    async def pull(self, branch: str, *, rebase: bool = False) -> None:
        await self.run("pull", "--rebase" if rebase else "--ff-only", self.remote, branch)

    async def push(self, branch: str, *, force_with_lease: bool = False) -> None:
        args = ["push", "-u"]
        if force_with_lease:
            args.append("--force-with-lease")
        await self.run(*args, self.remote, branch)

    async def rebase(self, onto: str) -> None:
        await self.run("rebase", onto)

    async def rebase_abort(self) -> None:
        """Abort an in-progress rebase; a no-op when none is running."""
        await self._exec("rebase", "--abort")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def log_range(self, base: str, head: str = "HEAD") -> list[str]:
        """``<short-sha> <subject>`` for each commit in base..head, newest first."""
        out = await self.run("log", f"{base}..{head}", "--format=%h %s")
        return [line for line in out.splitlines() if line.strip()]

    async def diff_names(self, base: str) -> list[str]:
        out = await self.run("diff", "--name-only", base)
        return [line for line in out.splitlines() if line.strip()]

    async def status_porcelain(self) -> list[str]:
        """Paths with uncommitted changes, untracked files included."""
        out = await self.run("status", "--porcelain")
        # "XY path" or "R  old -> new"
        return [
            line[3:].split(" -> ")[-1].strip().strip('"')
            for line in out.splitlines()
            if len(line) > 3
        ]

    async def ls_files(self, limit: int = 200) -> list[str]:
        out = await self.run("ls-files")
        return out.splitlines()[:limit]

    async def commit_count(self, ref: str = "HEAD") -> int:
        out = await self.run("rev-list", "--count", ref)
        return int(out or 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_all(self, *paths: str) -> None:
        await self.run("add", *(paths or ("-A",)))

    async def commit(self, message: str) -> None:
        await self.run("commit", "-m", message)

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    async def worktree_add(self, path: Path, branch: str, start: str) -> None:
        await self.run("worktree", "add", "-b", branch, str(path), start)

    async def worktree_remove(self, path: Path) -> None:
        await self.run("worktree", "remove", "--force", str(path))

    async def worktree_prune(self) -> None:
        await self.run("worktree", "prune")
