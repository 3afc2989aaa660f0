"""Sprint velocity, lead time and stale in-progress tickets."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from autodev.clients.tracker import JiraClient, jql_quote
from autodev.core.config import ProjectConfig
from autodev.core.models import WorkItem


@dataclass(frozen=True)
class SprintVelocity:
    name: str
    sprint_id: int
    done: int
    points: float


@dataclass(frozen=True)
class LeadTime:
    average_days: float
    count: int


def average_lead_time(items: Sequence[WorkItem]) -> LeadTime:
    """Mean of (status change - creation), in days rounded to 0.1."""
    spans = [
        (i.status_changed - i.created).total_seconds()
        for i in items
        if i.created is not None and i.status_changed is not None
    ]
    if not spans:
        return LeadTime(0.0, 0)
    return LeadTime(round(sum(spans) / len(spans) / 86400, 1), len(spans))


async def velocity(
    tracker: JiraClient, project: ProjectConfig, last: int = 5
) -> list[SprintVelocity]:
    board = await tracker.board_id(project.key)
    rows = []
    for sprint in await tracker.closed_sprints(board, last):
        done = [i for i in await tracker.sprint_issues(sprint.id) if i.is_done]
        points = sum(i.story_points or 0 for i in done)
        rows.append(SprintVelocity(sprint.name, sprint.id, len(done), points))
    return rows


async def lead_time(
    tracker: JiraClient, project: ProjectConfig, sprint: str | None = None
) -> LeadTime:
    scope = f"sprint = {jql_quote(sprint)}" if sprint else "sprint in closedSprints()"
    jql = f"project = {project.key} AND status = {jql_quote(project.statuses.done)} AND {scope}"
    return average_lead_time(await tracker.search_items(jql, 200))


async def stale_items(
    tracker: JiraClient, project: ProjectConfig, days: int = 7
) -> list[WorkItem]:
    jql = (
        f"project = {project.key} AND status = {jql_quote(project.statuses.in_progress)} "
        f"AND updated <= -{days}d ORDER BY updated ASC"
    )
    return await tracker.search_items(jql, 50)
