"""autodev batch: let the agent group tickets, pick groups, run each on one branch."""

from __future__ import annotations

from collections.abc import Mapping

import click
from rich.markup import escape
from rich.table import Table

from autodev.cli._common import console, print_prompt, run_async
from autodev.core.batch import GroupOutcome, TicketGroup
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.context import ensure_project_context
from autodev.core.models import WorkItem
from autodev.core.runtime import ProjectRuntime


def show_groups(groups: list[TicketGroup], items: Mapping[str, WorkItem]) -> None:
    table = Table(title="Proposed groups")
    table.add_column("#", justify="right")
    table.add_column("Group", style="bold")
    table.add_column("Tickets")
    table.add_column("Why", overflow="fold")
    for i, group in enumerate(groups, 1):
        tickets = "\n".join(
            f"{key} {items[key].summary[:60]}" if key in items else key for key in group.tickets
        )
        table.add_row(str(i), escape(group.name), escape(tickets), escape(group.reason))
    console.print(table)


def make_chooser(choice: str | None):
    """Chooser that returns *choice*, or asks on the terminal when it is None."""

    def _choose(groups: list[TicketGroup], items: Mapping[str, WorkItem]) -> str:
        show_groups(groups, items)
        if choice is not None:
            return choice
        return click.prompt(
            f"Run which group? [1-{len(groups)}, all, cancel]", default="cancel"
        )

    return _choose


def cmd_batch(
    config: AutodevConfig,
    project: ProjectConfig,
    *,
    choice: str | None,
    auto_close: bool,
    dry_run: bool,
) -> int:
    ensure_project_context(project, skip_validation=dry_run)

    async def _go() -> list[GroupOutcome]:
        async with ProjectRuntime(config, project) as rt:
            grouper = await rt.batch()
            return await grouper.run(make_chooser(choice), auto_close=auto_close, dry_run=dry_run)

    outcomes = run_async(_go())
    if not outcomes:
        console.print("Nothing to run.")
        return 0

    for outcome in outcomes:
        if outcome.prompt:
            print_prompt(outcome.name, outcome.prompt)
            continue
        colour = "green" if outcome.ok else "red"
        console.print(f"[bold {colour}]{escape(outcome.name)}[/bold {colour}]")
        if outcome.succeeded:
            console.print(f"  done:   {', '.join(outcome.succeeded)}")
        if outcome.failed:
            console.print(f"  failed: {', '.join(outcome.failed)}")
        if outcome.pr_url:
            console.print(f"  PR: {outcome.pr_url}")
        if outcome.reason:
            console.print(f"  [dim]{escape(outcome.reason[:500])}[/dim]")
    return 0 if any(o.ok for o in outcomes) else 1
