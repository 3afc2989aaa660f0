"""
Sprint lifecycle: sprint branches, completion recap, release and close.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from autodev.clients.git import Git
from autodev.clients.github import GitHubClient, PullRequest
from autodev.clients.tracker import JiraClient, Sprint, sprint_jql
from autodev.core.config import ProjectConfig
from autodev.core.constants import SPRINT_RECAP_DIR
from autodev.core.exceptions import AutodevError, TrackerError
from autodev.core.models import WorkItem

logger = structlog.get_logger()

_NUMBER_RE = re.compile(r"\d+")


def sprint_number(name: str) -> str:
    """First number in *name*, else the name with whitespace dashed."""
    m = _NUMBER_RE.search(name)
    return m.group(0) if m else re.sub(r"\s+", "-", name.strip())


def next_sprint_name(name: str) -> str:
    m = _NUMBER_RE.search(name)
    if not m:
        return f"{name} (next)"
    return f"{name[: m.start()]}{int(m.group(0)) + 1}{name[m.end():]}"


def sprint_branch_name(sprint_name: str) -> str:
    return f"sprint/sprint-{sprint_number(sprint_name)}"


# ---------------------------------------------------------------------------
# Recap
# ---------------------------------------------------------------------------


@dataclass
class SprintRecap:
    number: str
    content: str
    item_count: int
    pr_count: int

    @property
    def branch(self) -> str:
        return f"sprint/S{self.number}-recap"

    @property
    def filename(self) -> str:
        return f"SPRINT-S{self.number}.md"


def render_recap(
    sprint_name: str,
    items: Sequence[WorkItem],
    prs: Sequence[PullRequest],
    commit_count: int,
    *,
    today: str | None = None,
) -> SprintRecap:
    number = sprint_number(sprint_name)
    today = today or datetime.now(UTC).date().isoformat()
    done = sum(1 for i in items if i.is_done)

    by_epic: dict[str, list[WorkItem]] = {}
    for item in items:
        label = f"{item.epic_key}: {item.epic_summary}" if item.epic_key else "No epic"
        by_epic.setdefault(label, []).append(item)

    lines = [
        f"# Sprint {number} — {sprint_name}",
        "",
        f"**Completed**: {today}",
        f"**Tickets**: {done} done of {len(items)}",
        "",
        "## Tickets by epic",
    ]
    for label, epic_items in by_epic.items():
        lines += ["", f"### {label}", ""]
        for item in epic_items:
            pr = next((p for p in prs if item.key in p.title), None)
            ref = f" (#{pr.number})" if pr else ""
            box = "x" if item.is_done else " "
            lines.append(f"- [{box}] {item.key}: {item.summary}{ref}")
    lines += [
        "",
        "## Stats",
        f"- {len(items)} tickets processed",
        f"- {len(prs)} PRs merged",
        f"- {commit_count} commits",
        "",
        "---",
        "Generated by autodev",
    ]
    return SprintRecap(
        number=number, content="\n".join(lines) + "\n", item_count=len(items), pr_count=len(prs)
    )


@dataclass
class CloseReport:
    sprint: Sprint
    next_name: str
    done: list[WorkItem] = field(default_factory=list)
    not_done: list[WorkItem] = field(default_factory=list)
    next_sprint: Sprint | None = None
    release_pr: PullRequest | None = None
    recap_pr: PullRequest | None = None
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SprintManager:
    """Sprint operations for one project, on its shared repository checkout."""

    def __init__(
        self, *, project: ProjectConfig, tracker: JiraClient, git: Git, hosting: GitHubClient
    ) -> None:
        self.project = project
        self.tracker = tracker
        self.git = git
        self.hosting = hosting

    async def base_for(self, item: WorkItem) -> str:
        """Branch a session for *item* starts from (and its PR targets)."""
        if not self.project.sprint_branches or not item.sprint_name:
            return self.project.trunk
        return await self.ensure_branch(item.sprint_name)

    async def ensure_branch(self, sprint_name: str) -> str:
        branch = sprint_branch_name(sprint_name)
        if await self.git.branch_exists(branch):
            return branch
        if await self.git.remote_branch_exists(branch):
            await self.git.fetch(branch)
            await self.git.create_branch(branch, f"{self.git.remote}/{branch}")
            logger.info("sprint_branch_tracked", branch=branch)
            return branch
        trunk = self.project.trunk
        await self.git.checkout(trunk)
        await self.git.pull(trunk, rebase=True)
        await self.git.create_branch(branch)
        await self.git.push(branch)
        await self.git.checkout(trunk)
        logger.info("sprint_branch_created", branch=branch)
        return branch

    async def is_complete(self, sprint_name: str) -> bool:
        remaining = await self.tracker.count(sprint_jql(self.project, sprint_name, open_only=True))
        logger.info("sprint_remaining", sprint=sprint_name, remaining=remaining)
        return remaining == 0

    async def build_recap(self, sprint_name: str) -> SprintRecap:
        items = await self.tracker.search_items(sprint_jql(self.project, sprint_name), 100)
        try:
            prs = await self.hosting.list_merged_prs(rf"{self.project.key}-\d+")
        except AutodevError as exc:
            logger.warning("recap_prs_unavailable", error=str(exc))
            prs = []
        return render_recap(sprint_name, items, prs, await self.git.commit_count())

    async def write_recap(self, sprint_name: str) -> PullRequest:
        """Commit the recap on its own branch, open the PR and merge it."""
        recap = await self.build_recap(sprint_name)
        trunk = self.project.trunk
        git = self.git

        await git.checkout(trunk)
        await git.pull(trunk)
        if await git.branch_exists(recap.branch):
            await git.delete_branch(recap.branch)
        await git.create_branch(recap.branch)

        try:
            target = git.path / SPRINT_RECAP_DIR
            target.mkdir(parents=True, exist_ok=True)
            (target / recap.filename).write_text(recap.content, encoding="utf-8")

            await git.add_all(str(SPRINT_RECAP_DIR))
            await git.commit(
                f"docs(sprint): Sprint {recap.number} recap — "
                f"{recap.item_count} tickets completed"
            )
            await git.push(recap.branch)
            pr = await self.hosting.create_pr(
                f"docs(sprint): Sprint {recap.number} recap",
                f"Sprint {recap.number} finished.\n\n"
                f"- {recap.item_count} tickets\n- {recap.pr_count} PRs merged\n\n"
                "Generated by autodev",
                recap.branch,
                trunk,
            )
            await self.hosting.merge_pr(pr, "squash", delete_branch=True)
        finally:
            await git.checkout(trunk)
        await git.pull(trunk)
        logger.info("sprint_recap_merged", sprint=sprint_name, pr=pr.number)
        return pr

    async def release(self, sprint_name: str | None = None, *, merge: bool = False) -> PullRequest:
        """Open (or reuse) the PR from the sprint branch into trunk."""
        if sprint_name is None:
            board = await self.tracker.board_id(self.project.key)
            sprint = await self.tracker.active_sprint(board)
            if sprint is None:
                raise TrackerError(f"No active sprint for {self.project.key}")
            sprint_name = sprint.name
        branch = sprint_branch_name(sprint_name)
        trunk = self.project.trunk

        pr = await self.hosting.find_open_pr(branch, trunk)
        if pr is None:
            pr = await self.hosting.create_pr(
                f"release: {sprint_name}",
                f"Merge `{branch}` into `{trunk}`.\n\nGenerated by autodev",
                branch,
                trunk,
            )
        if merge:
            await self.hosting.merge_pr(pr, "merge", delete_branch=False)
            await self.git.checkout(trunk)
            await self.git.pull(trunk)
        return pr

    async def close_active(
        self, *, recap: bool = True, dry_run: bool = False
    ) -> CloseReport | None:
        board = await self.tracker.board_id(self.project.key)
        sprint = await self.tracker.active_sprint(board)
        if sprint is None:
            logger.info("no_active_sprint", project=self.project.key)
            return None

        issues = await self.tracker.sprint_issues(sprint.id)
        report = CloseReport(
            sprint=sprint,
            next_name=next_sprint_name(sprint.name),
            done=[i for i in issues if i.is_done],
            not_done=[i for i in issues if not i.is_done],
            dry_run=dry_run,
        )
        logger.info(
            "sprint_close_plan",
            sprint=sprint.name,
            done=len(report.done),
            not_done=len(report.not_done),
            next=report.next_name,
        )
        if dry_run:
            return report

        report.next_sprint = await self.tracker.create_sprint(board, report.next_name)
        if report.not_done:
            await self.tracker.move_to_sprint(
                report.next_sprint.id, [i.key for i in report.not_done]
            )
        await self.tracker.close_sprint(sprint.id)

        if self.project.sprint_branches:
            try:
                report.release_pr = await self.release(sprint.name)
            except AutodevError as exc:
                logger.warning("sprint_release_failed", sprint=sprint.name, error=str(exc))
        if recap:
            try:
                report.recap_pr = await self.write_recap(sprint.name)
            except (AutodevError, OSError) as exc:
                logger.warning("sprint_recap_failed", sprint=sprint.name, error=str(exc))
        return report
