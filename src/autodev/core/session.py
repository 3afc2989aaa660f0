"""
Execution session: one branch, one working copy, one agent run.

Lifecycle::

    CREATED -> RUNNING -> {SUCCEEDED, ALREADY_DONE, BLOCKED, FAILED}

A session works in one of two modes:

- **shared**: the repository checkout itself.  ``create()`` checks out
  the base branch, fast-forwards it, drops any stale local/remote branch
  of the same name and creates the session branch.  Only one shared
  session may exist at a time.
- **isolated**: a ``git worktree`` of its own, bound to a new branch
  started from the base.  The shared checkout is not touched, which is
  what lets several sessions run concurrently.

Sessions are async context managers; ``destroy()`` runs on every exit
path, exceptions included.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from autodev.clients.agent import AgentRun, AgentRunner
from autodev.clients.git import Git
from autodev.core.commits import format_commit_subject
from autodev.core.constants import SLUG_MAX_LENGTH, SUMMARY_MAX_CHARS
from autodev.core.exceptions import GitError
from autodev.core.markers import clear_markers, collect_markers
from autodev.core.models import EvaluationResult, Outcome, WorkItem

logger = structlog.get_logger()


class SessionState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ALREADY_DONE = "already_done"
    BLOCKED = "blocked"
    FAILED = "failed"


_TERMINAL = {
    Outcome.SUCCESS: SessionState.SUCCEEDED,
    Outcome.ALREADY_DONE: SessionState.ALREADY_DONE,
    Outcome.BLOCKED: SessionState.BLOCKED,
    Outcome.FAILED: SessionState.FAILED,
}


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """ASCII, lower-case, dash-separated; accents are stripped."""
    ascii_text = (
        unicodedata.normalize("NFD", text).encode("ascii", "ignore").decode("ascii").lower()
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_text).strip("-")
    return slug[:max_length].rstrip("-")


def branch_name(items: Sequence[WorkItem], *, group_name: str | None = None) -> str:
    """
    Deterministic branch name for a session.

    One item:   ``feat/HIVE-42-add-login-form``
    Several:    ``feat/HIVE-batch-<group slug>`` (or the item numbers)
    """
    if not items:
        raise ValueError("a session needs at least one work item")
    project = items[0].project_key
    if len(items) == 1 and group_name is None:
        item = items[0]
        slug = slugify(item.summary)
        return f"feat/{project}-{item.number}" + (f"-{slug}" if slug else "")
    label = slugify(group_name) if group_name else "-".join(i.number for i in items)
    return f"feat/{project}-batch-{label}"


class ExecutionSession:
    """
    One disposable working copy bound to one branch.

    Parameters
    ----------
    items:
        The work items assigned to the session (one, or a batch group).
    git:
        Git wrapper for the shared repository checkout.
    agent:
        Coding agent used by :meth:`run`.
    base:
        Branch the session starts from and is compared against.
    isolated:
        Use a dedicated worktree under *worktree_root*.
    """

    def __init__(
        self,
        items: Sequence[WorkItem],
        *,
        git: Git,
        agent: AgentRunner,
        base: str = "main",
        isolated: bool = False,
        worktree_root: Path = Path("/tmp"),
        group_name: str | None = None,
    ) -> None:
        self.items = list(items)
        self.base = base
        self.isolated = isolated
        self.branch = branch_name(self.items, group_name=group_name)
        self.state = SessionState.CREATED
        self.agent_run: AgentRun | None = None
        self.keep_branch = False  # set when a failed integration leaves the branch for review
        self._repo_git = git
        self._agent = agent
        self._result: EvaluationResult | None = None
        self._destroyed = False

        label = self.items[0].key if len(self.items) == 1 else self.branch.split("/", 1)[-1]
        self.workdir = (
            worktree_root / f"autodev-{label.lower()}" if isolated else git.path
        )
        self.log = logger.bind(key=",".join(i.key for i in self.items))

    @property
    def git(self) -> Git:
        """Git bound to the session's working copy."""
        return self._repo_git.at(self.workdir)

    @property
    def repo_git(self) -> Git:
        """Git bound to the shared repository checkout."""
        return self._repo_git

    @property
    def result(self) -> EvaluationResult | None:
        return self._result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self) -> None:
        repo = self._repo_git
        if self.isolated:
            if self.workdir.exists():
                self.log.info("stale_worktree_removed", path=str(self.workdir))
                await repo.worktree_remove(self.workdir)
            await repo.worktree_prune()
            if await repo.branch_exists(self.branch):
                await repo.delete_branch(self.branch)
            await repo.worktree_add(self.workdir, self.branch, self.base)
        else:
            await repo.checkout(self.base)
            await repo.pull(self.base, rebase=True)
            if await repo.branch_exists(self.branch):
                await repo.delete_branch(self.branch)
                self.log.info("stale_branch_deleted", branch=self.branch)
            if await repo.remote_branch_exists(self.branch):
                await repo.delete_remote_branch(self.branch)
                self.log.info("stale_remote_branch_deleted", branch=self.branch)
            await repo.create_branch(self.branch)
        clear_markers(self.workdir)
        self.state = SessionState.CREATED
        self.log.info(
            "session_created", branch=self.branch, isolated=self.isolated, workdir=str(self.workdir)
        )

    async def run(self, prompt: str) -> AgentRun:
        self.state = SessionState.RUNNING
        self._result = None
        self.agent_run = await self._agent.run(prompt, self.workdir, log=self.log)
        return self.agent_run

    async def evaluate(self) -> EvaluationResult:
        """
        Decide what the agent produced.

        Priority: BLOCKED marker, ALREADY_DONE marker, then the branch
        itself.  Uncommitted edits without any commit are committed on
        the agent's behalf first.  The result is kept until the next
        :meth:`run`, so evaluating twice gives the same answer.
        """
        if self._result is not None:
            return self._result

        markers = collect_markers(self.workdir)
        if markers.blocked is not None:
            result = EvaluationResult.blocked(markers.blocked or "Agent reported BLOCKED")
        elif markers.already_done is not None:
            result = EvaluationResult.already_done(markers.already_done)
        else:
            result = await self._inspect_branch()

        return self.finish(result)

    async def _inspect_branch(self) -> EvaluationResult:
        git = self.git
        commits = await git.log_range(self.base)
        pending = await git.status_porcelain()
        if not commits and pending:
            self.log.info("auto_commit", files=len(pending))
            try:
                await git.add_all()
                await git.commit(self._auto_commit_message())
            except GitError as exc:
                self.log.warning("auto_commit_failed", error=str(exc))
            else:
                commits = await git.log_range(self.base)
                pending = await git.status_porcelain()

        modified = sorted(set(await git.diff_names(self.base)) | set(pending))
        if commits or modified:
            summary = self.agent_run.summary if self.agent_run else ""
            return EvaluationResult.success(modified, summary=summary[:SUMMARY_MAX_CHARS])
        return EvaluationResult.failed()

    def _auto_commit_message(self) -> str:
        if len(self.items) == 1:
            return format_commit_subject(self.items[0].key, "implement ticket")
        return "chore(autodev): commit uncommitted agent changes"

    def finish(self, result: EvaluationResult) -> EvaluationResult:
        """Record *result* as the session's outcome."""
        self._result = result
        self.state = _TERMINAL[result.outcome]
        self.log.info("session_evaluated", outcome=result.outcome, files=len(result.modified_files))
        return result

    async def execute(self, prompt: str) -> EvaluationResult:
        """``run`` + ``evaluate``; any error becomes a FAILED result carrying its text."""
        try:
            await self.run(prompt)
            return await self.evaluate()
        except Exception as exc:
            self.log.warning("session_error", error=str(exc))
            return self.finish(EvaluationResult.failed(str(exc) or type(exc).__name__))

    async def destroy(self) -> None:
        """Release the working copy.

        Isolated sessions remove their worktree.  Shared sessions return
        to the base branch and, unless they succeeded (or were asked to
        keep it), force-delete the session branch.  Cleanup problems are
        logged; they never mask the session's own outcome.
        """
        if self._destroyed:
            return
        self._destroyed = True
        repo = self._repo_git
        try:
            if self.isolated:
                await repo.worktree_remove(self.workdir)
            else:
                await repo.checkout(self.base)
                if self.state != SessionState.SUCCEEDED and not self.keep_branch:
                    await repo.delete_branch(self.branch)
        except GitError as exc:
            self.log.warning("session_cleanup_failed", branch=self.branch, error=str(exc))
        else:
            self.log.info("session_destroyed", branch=self.branch, state=self.state)

    async def __aenter__(self) -> ExecutionSession:
        try:
            await self.create()
        except BaseException:
            self.state = SessionState.FAILED
            await self.destroy()
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc is not None and self.state in (SessionState.CREATED, SessionState.RUNNING):
            self.state = SessionState.FAILED
        await self.destroy()
