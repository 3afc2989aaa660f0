"""autodev run / autodev next: process one ticket, or loop over eligible ones."""

from __future__ import annotations

from rich.markup import escape
from rich.table import Table

from autodev.cli._common import console, print_prompt, run_async
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.context import ensure_project_context
from autodev.core.dispatcher import ItemOutcome, RunSummary
from autodev.core.models import Outcome
from autodev.core.runtime import ProjectRuntime

_STYLES = {
    Outcome.SUCCESS: "green",
    Outcome.ALREADY_DONE: "cyan",
    Outcome.BLOCKED: "yellow",
    Outcome.FAILED: "red",
}


def _describe(outcome: ItemOutcome) -> str:
    if outcome.dry_run:
        return "[yellow]dry run[/yellow]"
    if outcome.outcome is None:
        return f"[dim]skipped: {escape(outcome.reason)}[/dim]"
    style = _STYLES[outcome.outcome]
    return f"[{style}]{outcome.outcome.value}[/{style}]"


def print_summary(summary: RunSummary) -> None:
    table = Table(title="Run summary")
    table.add_column("Ticket", style="bold")
    table.add_column("Result")
    table.add_column("PR / reason", overflow="fold")
    for outcome in summary.outcomes:
        detail = outcome.pr_url or outcome.reason
        table.add_row(outcome.key, _describe(outcome), escape(detail[:200]))
    console.print(table)
    console.print(
        f"[green]{len(summary.succeeded)} succeeded[/green], "
        f"[red]{len(summary.failed)} failed[/red]"
    )


def _show_outcome(outcome: ItemOutcome) -> None:
    if outcome.dry_run:
        print_prompt(outcome.key, outcome.prompt)
        return
    console.print(f"[bold]{outcome.key}[/bold]: {_describe(outcome)}")
    if outcome.pr_url:
        console.print(f"  PR: {outcome.pr_url}")
    elif outcome.reason:
        console.print(f"  [dim]{escape(outcome.reason[:500])}[/dim]")


def cmd_run(
    config: AutodevConfig, project: ProjectConfig, key: str, *, dry_run: bool, auto_close: bool
) -> int:
    ensure_project_context(project, skip_validation=dry_run)

    async def _go() -> ItemOutcome:
        async with ProjectRuntime(config, project) as rt:
            dispatcher = await rt.dispatcher()
            return await dispatcher.process_item(key, dry_run=dry_run, auto_close=auto_close)

    outcome = run_async(_go())
    _show_outcome(outcome)
    return 0 if outcome.ok else 1


def cmd_next(
    config: AutodevConfig,
    project: ProjectConfig,
    *,
    parallel: int,
    auto_close: bool,
    dry_run: bool,
) -> int:
    ensure_project_context(project, skip_validation=dry_run)

    async def _go() -> RunSummary:
        async with ProjectRuntime(config, project) as rt:
            dispatcher = await rt.dispatcher()
            return await dispatcher.run_next(
                parallel=parallel, auto_close=auto_close, dry_run=dry_run
            )

    summary = run_async(_go())
    if not summary.outcomes:
        console.print(f"No eligible ticket in {project.key}.")
        return 0
    if dry_run:
        for outcome in summary.outcomes:
            _show_outcome(outcome)
        return 0
    print_summary(summary)
    return int(summary.exit_code)
