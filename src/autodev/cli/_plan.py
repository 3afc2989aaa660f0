"""autodev plan: run one step of the planning pipeline."""

from __future__ import annotations

from pathlib import Path

from rich.markup import escape
from rich.table import Table

from autodev.cli._common import console, run_async
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.planner import (
    ImportReport,
    PlanStep,
    PlanSummary,
    SprintTasksResult,
)
from autodev.core.runtime import ProjectRuntime


def show_validation(summary: PlanSummary) -> None:
    table = Table(title="Plan")
    table.add_column("#", justify="right")
    table.add_column("Sprint", style="bold")
    table.add_column("Tasks", justify="right")
    table.add_column("Points", justify="right")
    for sprint in summary.sprints:
        if sprint.tasks is None:
            table.add_row(str(sprint.index), escape(sprint.title), "[red]missing[/red]", "-")
        else:
            table.add_row(
                str(sprint.index),
                escape(sprint.title),
                str(len(sprint.tasks)),
                f"{sprint.points:g}",
            )
    console.print(table)
    console.print(f"Total: {summary.total_tasks} tasks, {summary.total_points:g} points")


def show_import(report: ImportReport) -> None:
    title = "Import preview" if report.dry_run else "Imported"
    table = Table(title=title)
    table.add_column("Sprint", style="bold")
    table.add_column("Tickets", justify="right")
    table.add_column("Keys")
    table.add_column("Links", justify="right")
    for s in report.sprints:
        keys = f"{s.keys[0]} .. {s.keys[-1]}" if s.keys else "-"
        table.add_row(escape(s.name), str(s.task_count), keys, str(s.links))
    console.print(table)
    console.print(f"{report.total_tickets} tickets, {report.total_links} links")


def show_tasks(results: list[SprintTasksResult]) -> None:
    for r in results:
        if r.ok:
            console.print(f"[green]OK[/green]    Sprint {r.index}: {escape(r.title)}")
        else:
            console.print(
                f"[red]FAIL[/red]  Sprint {r.index}: {escape(r.title)}: {escape(r.error)}"
            )


def cmd_plan(
    config: AutodevConfig,
    project: ProjectConfig,
    *,
    step: str | None,
    plan_file: str | None,
    dry_run: bool,
) -> int:
    async def _go() -> tuple[PlanStep | None, object]:
        async with ProjectRuntime(config, project) as rt:
            planner = rt.planner()
            chosen = PlanStep(step) if step else planner.state().next_step()
            if chosen is None:
                return None, None
            console.print(f"[bold]Plan step:[/bold] {chosen}")
            return chosen, await planner.run_step(chosen, plan_file=plan_file, dry_run=dry_run)

    chosen, result = run_async(_go())
    if chosen is None:
        console.print("Planning is complete. Pass --step to rerun a step.")
        return 0
    if isinstance(result, Path):
        console.print(f"Wrote {result}")
    elif isinstance(result, PlanSummary):
        show_validation(result)
    elif isinstance(result, ImportReport):
        show_import(result)
    elif isinstance(result, list):
        show_tasks(result)
        return 0 if all(r.ok for r in result) else 1
    return 0
