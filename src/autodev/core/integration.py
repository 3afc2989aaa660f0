"""
Integration pipeline: push, pull request, optional merge, tracker update.

The pipeline is the only place where a session's work leaves the
working copy.  Everything that touches the local trunk checkout (the
merge, fast-forwarding the base, the terminal transition) runs inside
the repository's :class:`~autodev.core.merge.MergeLock`.

Labels, comments and reports are auxiliary: their failures are logged
and never turn an integrated item into a failed one.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from autodev.clients.github import PullRequest
from autodev.core.constants import COMMENT_PREFIX
from autodev.core.exceptions import AutodevError
from autodev.core.merge import MergeLock, merge_with_retry
from autodev.core.models import EvaluationResult, WorkItem
from autodev.core.session import ExecutionSession

logger = structlog.get_logger()

PR_LABELS = ("autodev",)


@dataclass
class PullRequestDraft:
    """Title, body and bookkeeping for the PR a session will open."""

    title: str
    body: str
    close_keys: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=lambda: list(PR_LABELS))


def _file_lines(files: Sequence[str]) -> list[str]:
    return [f"- `{f}`" for f in files] if files else ["See the commits."]


def build_item_draft(
    item: WorkItem, result: EvaluationResult, commits: Sequence[str], browse_url: str
) -> PullRequestDraft:
    body = [
        "## Ticket",
        f"[{item.key}]({browse_url}) {item.summary}",
        "",
        "## Changes",
        *_file_lines(result.modified_files),
        "",
        "## Commits",
        "```",
        *(commits or ["(none)"]),
        "```",
        "",
        "---",
        "Generated by autodev",
    ]
    return PullRequestDraft(
        title=f"{item.key}: {item.summary}", body="\n".join(body), close_keys=[item.key]
    )


class Hosting(Protocol):
    async def create_pr(
        self, title: str, body: str, head: str, base: str = "main", *, draft: bool = False
    ) -> PullRequest: ...

    async def merge_pr(
        self, pr: PullRequest, merge_method: str = "squash", *, delete_branch: bool = True
    ) -> None: ...

    async def add_labels(self, pr_number: int, labels: list[str]) -> None: ...


class Reporter(Protocol):
    async def publish(
        self, item: WorkItem, result: EvaluationResult, pr_url: str
    ) -> str | None: ...


class IntegrationPipeline:
    """
    Turn a successful session into a pull request.

    ``integrate`` pushes the session branch and opens the PR.  With
    ``auto_close`` it then takes the merge lock, squash-merges (rebasing
    and retrying on conflict), fast-forwards the local base and moves the
    items to their terminal status.  Without it the items are only
    commented with the PR link.
    """

    def __init__(
        self,
        *,
        tracker: Any,
        hosting: Hosting,
        lock: MergeLock,
        done_transition: str = "Done",
        reporter: Reporter | None = None,
        merge_retries: int = 2,
    ) -> None:
        self.tracker = tracker
        self.hosting = hosting
        self.lock = lock
        self.done_transition = done_transition
        self.reporter = reporter
        self.merge_retries = merge_retries

    async def draft_for(
        self, session: ExecutionSession, result: EvaluationResult
    ) -> PullRequestDraft:
        item = session.items[0]
        commits = await session.git.log_range(session.base)
        return build_item_draft(item, result, commits, self.tracker.browse_url(item.key))

    async def integrate(
        self,
        session: ExecutionSession,
        result: EvaluationResult,
        *,
        auto_close: bool,
        draft: PullRequestDraft | None = None,
    ) -> PullRequest:
        log = session.log
        draft = draft or await self.draft_for(session, result)

        await session.git.push(session.branch)
        log.info("branch_pushed", branch=session.branch)
        pr = await self.hosting.create_pr(draft.title, draft.body, session.branch, session.base)
        if draft.labels:
            try:
                await self.hosting.add_labels(pr.number, draft.labels)
            except AutodevError as exc:
                log.warning("pr_label_failed", pr=pr.number, error=str(exc))

        if not auto_close:
            for key in draft.close_keys:
                await self._comment(
                    key,
                    f"{COMMENT_PREFIX} PR created: {pr.url}\n\n"
                    f"Branch: {session.branch}\n"
                    f"Modified files: {len(result.modified_files)}",
                )
            await self._report(session, result, pr)
            return pr

        async with self.lock.ticket(session.branch) as ticket:
            log.info("merge_started", pr=pr.number, serial=ticket.serial)
            await merge_with_retry(
                pr,
                session.branch,
                hosting=self.hosting,
                git=session.git,
                base=session.base,
                max_retries=self.merge_retries,
                log=log,
            )
            await session.repo_git.checkout(session.base)
            await session.repo_git.pull(session.base)
            for key in draft.close_keys:
                try:
                    await self.tracker.transition(key, self.done_transition)
                except AutodevError as exc:
                    log.warning("close_transition_failed", item=key, error=str(exc))
                await self._comment(
                    key,
                    f"{COMMENT_PREFIX} PR merged and ticket closed: {pr.url}\n\n"
                    f"Branch: {session.branch}\n"
                    f"Modified files: {len(result.modified_files)}",
                )
            log.info("merge_finished", pr=pr.number)
        await self._report(session, result, pr)
        return pr

    async def _comment(self, key: str, text: str) -> None:
        try:
            await self.tracker.comment(key, text)
        except AutodevError as exc:
            logger.warning("comment_failed", key=key, error=str(exc))

    async def _report(
        self, session: ExecutionSession, result: EvaluationResult, pr: PullRequest
    ) -> None:
        if self.reporter is None or len(session.items) != 1:
            return
        item = session.items[0]
        url = await self.reporter.publish(item, result, pr.url)
        if url:
            await self._comment(item.key, f"{COMMENT_PREFIX} Confluence report: {url}")
