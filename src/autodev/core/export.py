"""Export completed tickets to ``autodev/done-tasks.md``."""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import structlog

from autodev.clients.tracker import JiraClient, jql_quote
from autodev.core.config import ProjectConfig
from autodev.core.constants import COMMENT_PREFIX, SUMMARY_MAX_CHARS
from autodev.core.exceptions import AutodevError
from autodev.core.models import WorkItem

logger = structlog.get_logger()

DONE_TASKS_FILENAME = "done-tasks.md"
_COMMENT_CHARS = 200
_PR_URL_RE = re.compile(r"https://github\.com/\S+")
_FILES_RE = re.compile(r"Modified files:\s*(\d+)")


def done_jql(project: ProjectConfig, sprint: str | None = None) -> str:
    conditions = [
        f"project = {project.key}",
        f"status = {jql_quote(project.statuses.done)}",
        f"issuetype != {jql_quote(project.epic_type)}",
    ]
    if sprint:
        conditions.append(f"sprint = {jql_quote(sprint)}")
    return " AND ".join(conditions) + " ORDER BY created ASC"


def _clip(text: str, limit: int) -> str:
    flat = text.replace("\n", " ").strip()
    return flat if len(flat) <= limit else flat[:limit] + "..."


def pr_reference(item: WorkItem) -> str | None:
    """PR link (and file count) from the first autodev PR comment, if any."""
    for comment in item.comments:
        if f"{COMMENT_PREFIX} PR" not in comment.body:
            continue
        url = _PR_URL_RE.search(comment.body)
        if not url:
            continue
        files = _FILES_RE.search(comment.body)
        return url.group(0) + (f" ({files.group(1)} files)" if files else "")
    return None


def format_item(item: WorkItem) -> str:
    lines = [
        f"### {item.key}: {item.summary}",
        f"- **Type**: {item.issue_type} | **Priority**: {item.priority}",
    ]
    if item.epic_key:
        lines.append(f"- **Epic**: {item.epic_key} ({item.epic_summary})")
    if item.description:
        lines.append(f"- **Description**: {_clip(item.description, SUMMARY_MAX_CHARS)}")
    if item.links:
        deps = ", ".join(f"{link.direction} {link.key} ({link.status})" for link in item.links)
        lines.append(f"- **Dependencies**: {deps}")
    if pr := pr_reference(item):
        lines.append(f"- **PR**: {pr}")
    if item.comments:
        lines.append("- **Comments**:")
        lines += [f"  - [{c.author}] {_clip(c.body, _COMMENT_CHARS)}" for c in item.comments]
    return "\n".join(lines)


def render_done_tasks(
    project_key: str, items: Sequence[WorkItem], *, today: str | None = None
) -> str:
    by_sprint: dict[str, list[WorkItem]] = {}
    for item in items:
        by_sprint.setdefault(item.sprint_name or "No sprint", []).append(item)
    today = today or datetime.now(UTC).date().isoformat()

    lines = [
        f"# Completed tasks: {project_key}",
        "",
        f"> Generated {today} by autodev",
        f"> {len(items)} tickets across {len(by_sprint)} sprint(s)",
    ]
    for sprint, sprint_items in by_sprint.items():
        lines += ["", f"## {sprint}", ""]
        for item in sprint_items:
            lines += [format_item(item), ""]
    return "\n".join(lines) + "\n"


async def export_done_tasks(
    tracker: JiraClient, project: ProjectConfig, *, sprint: str | None = None
) -> Path | None:
    """Write the done-tasks file; None when nothing is done yet."""
    keys = await tracker.search_keys(done_jql(project, sprint))
    if not keys:
        logger.info("export_nothing_done", project=project.key, sprint=sprint)
        return None
    logger.info("export_fetching", count=len(keys))

    items: list[WorkItem] = []
    for key in keys:
        try:
            items.append(await tracker.fetch_item(key))
        except AutodevError as exc:
            logger.warning("export_fetch_failed", key=key, error=str(exc))

    project.context_dir.mkdir(parents=True, exist_ok=True)
    path = project.context_dir / DONE_TASKS_FILENAME
    path.write_text(render_done_tasks(project.key, items), encoding="utf-8")
    logger.info("export_written", path=str(path), items=len(items))
    return path
