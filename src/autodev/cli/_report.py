"""autodev export / verify / metrics."""

from __future__ import annotations

from pathlib import Path

from rich.markup import escape
from rich.table import Table

from autodev.cli._common import console, run_async
from autodev.core import metrics
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.export import export_done_tasks
from autodev.core.models import WorkItem
from autodev.core.runtime import ProjectRuntime
from autodev.core.verify import Severity, VerifyResult, run_verify


def cmd_export(config: AutodevConfig, project: ProjectConfig, *, sprint: str | None) -> int:
    async def _go() -> Path | None:
        async with ProjectRuntime(config, project) as rt:
            return await export_done_tasks(rt.tracker, project, sprint=sprint)

    path = run_async(_go())
    if path is None:
        console.print("No completed ticket to export.")
    else:
        console.print(f"Wrote {path}")
    return 0


def show_verify(result: VerifyResult) -> None:
    table = Table(title="Verification")
    table.add_column("Severity")
    table.add_column("Problem", style="bold")
    table.add_column("Tickets")
    table.add_column("Action")
    for p in result.problems:
        colour = "red" if p.severity == Severity.CRITICAL else "yellow"
        table.add_row(
            f"[{colour}]{p.severity}[/{colour}]",
            escape(p.title),
            ", ".join(p.tickets),
            escape(p.action),
        )
    console.print(table)
    console.print(
        f"{result.critical} critical, {result.warnings} warnings; "
        f"report: {result.report_path}"
    )
    if result.created:
        where = f" in {result.sprint_name}" if result.sprint_name else ""
        console.print(f"Created{where}: {', '.join(result.created)}")


def cmd_verify(config: AutodevConfig, project: ProjectConfig) -> int:
    async def _go() -> VerifyResult | None:
        async with ProjectRuntime(config, project) as rt:
            return await run_verify(rt.tracker, rt.agent, project)

    result = run_async(_go())
    if result is None:
        console.print("No completed ticket to verify.")
        return 0
    show_verify(result)
    return 1 if result.critical else 0


def _velocity_table(rows: list[metrics.SprintVelocity]) -> Table:
    table = Table(title="Velocity")
    table.add_column("Sprint", style="bold")
    table.add_column("Done", justify="right")
    table.add_column("Points", justify="right")
    for row in rows:
        table.add_row(escape(row.name), str(row.done), f"{row.points:g}")
    if rows:
        avg = sum(r.points for r in rows) / len(rows)
        table.caption = f"average {avg:.1f} points per sprint"
    return table


def _stale_table(items: list[WorkItem], days: int) -> Table:
    table = Table(title=f"In progress for more than {days} days")
    table.add_column("Ticket", style="bold")
    table.add_column("Summary")
    table.add_column("Updated")
    table.add_column("Assignee")
    for item in items:
        updated = item.updated.date().isoformat() if item.updated else "?"
        table.add_row(item.key, escape(item.summary[:70]), updated, item.assignee or "-")
    return table


def cmd_metrics(
    config: AutodevConfig,
    project: ProjectConfig,
    *,
    last: int,
    stale_days: int,
    sprint: str | None,
) -> int:
    async def _go():
        async with ProjectRuntime(config, project) as rt:
            return (
                await metrics.velocity(rt.tracker, project, last),
                await metrics.lead_time(rt.tracker, project, sprint),
                await metrics.stale_items(rt.tracker, project, stale_days),
            )

    rows, lead, stale = run_async(_go())
    console.print(_velocity_table(rows))
    if lead.count:
        console.print(f"Lead time: [bold]{lead.average_days} days[/bold] over {lead.count} tickets")
    else:
        console.print("Lead time: no completed ticket")
    if stale:
        console.print(_stale_table(stale, stale_days))
    else:
        console.print(f"No ticket stuck in progress for more than {stale_days} days.")
    return 0
