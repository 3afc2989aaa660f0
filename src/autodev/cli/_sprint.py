"""autodev release / autodev close-sprint."""

from __future__ import annotations

from rich.markup import escape
from rich.table import Table

from autodev.cli._common import console, run_async
from autodev.clients.github import PullRequest
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.runtime import ProjectRuntime
from autodev.core.sprint import CloseReport


def cmd_release(
    config: AutodevConfig, project: ProjectConfig, *, sprint: str | None, merge: bool
) -> int:
    async def _go() -> PullRequest:
        async with ProjectRuntime(config, project) as rt:
            manager = await rt.sprints()
            return await manager.release(sprint, merge=merge)

    pr = run_async(_go())
    verb = "Merged" if merge else "Release PR"
    console.print(f"{verb}: [bold]#{pr.number}[/bold] {pr.url}")
    return 0


def show_close(report: CloseReport) -> None:
    prefix = "[yellow][DRY RUN][/yellow] " if report.dry_run else ""
    console.print(f"{prefix}[bold]Closing {escape(report.sprint.name)}[/bold]")

    table = Table()
    table.add_column("Ticket", style="bold")
    table.add_column("Summary")
    table.add_column("Status")
    for item in report.done:
        table.add_row(item.key, escape(item.summary[:70]), "[green]done[/green]")
    for item in report.not_done:
        carried = f"[yellow]-> {escape(report.next_name)}[/yellow]"
        table.add_row(item.key, escape(item.summary[:70]), carried)
    console.print(table)
    console.print(
        f"{len(report.done)} done, {len(report.not_done)} carried over to {report.next_name}"
    )
    if report.release_pr:
        console.print(f"Release PR: {report.release_pr.url}")
    if report.recap_pr:
        console.print(f"Recap PR: {report.recap_pr.url}")


def cmd_close_sprint(
    config: AutodevConfig, project: ProjectConfig, *, recap: bool, dry_run: bool
) -> int:
    async def _go() -> CloseReport | None:
        async with ProjectRuntime(config, project) as rt:
            manager = await rt.sprints()
            return await manager.close_active(recap=recap, dry_run=dry_run)

    report = run_async(_go())
    if report is None:
        console.print(f"No active sprint in {project.key}.")
        return 0
    show_close(report)
    return 0
