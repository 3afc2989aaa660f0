"""
autodev CLI entry point.

Commands:
  autodev run KEY              process one ticket
  autodev next                 pick eligible tickets and process them
  autodev batch                group tickets with the agent and run groups
  autodev plan                 run one step of the planning pipeline
  autodev verify               audit completed work, file follow-up tickets
  autodev release              open (or merge) the sprint branch PR
  autodev close-sprint         close the active sprint and roll over
  autodev export               write autodev/done-tasks.md
  autodev metrics              velocity, lead time, stale tickets
  autodev init                 bootstrap autodev/ context files
  autodev mcp                  stdio MCP server for automation clients
  autodev config init|show     manage the configuration file
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import click

from autodev import __version__
from autodev.cli._common import fail, get_config, resolve_project
from autodev.core.constants import MAX_PARALLEL
from autodev.core.exceptions import AutodevError

_PROJECT_OPTION = click.option(
    "--project", "-p", "project_key", default=None, help="Project key (e.g. HIVE)."
)


class AutodevGroup(click.Group):
    """Click group that reports AutodevError as a one-line message and exit code."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except AutodevError as exc:
            fail(exc)


def _exit(code: int) -> None:
    if code:
        sys.exit(code)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(cls=AutodevGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="autodev %(version)s")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $AUTODEV_CONFIG or the platform config dir).",
)
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR).")
@click.option("--log-json", is_flag=True, default=False, help="Emit JSON log lines.")
@click.pass_context
def cli(
    ctx: click.Context, config_path: Path | None, log_level: str | None, log_json: bool
) -> None:
    """autodev: implement tracker tickets with a coding agent, end to end."""
    from autodev.core.logging import configure_logging

    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, log_level=log_level, log_json=log_json)
    configure_logging(level=log_level or "INFO", json_output=log_json)


# ---------------------------------------------------------------------------
# run / next
# ---------------------------------------------------------------------------


@cli.command("run")
@click.argument("key")
@click.option("--dry-run", is_flag=True, default=False, help="Print the prompt, change nothing.")
@click.option("--auto-close", is_flag=True, default=False, help="Merge the PR, close the ticket.")
@click.pass_context
def run_cmd(ctx: click.Context, key: str, dry_run: bool, auto_close: bool) -> None:
    """Process one ticket."""
    from autodev.cli._run import cmd_run

    config = get_config(ctx)
    key = key.upper()
    _exit(
        cmd_run(
            config, config.project_for_item(key), key, dry_run=dry_run, auto_close=auto_close
        )
    )


@cli.command("next")
@_PROJECT_OPTION
@click.option(
    "--parallel",
    type=click.IntRange(1, MAX_PARALLEL),
    default=1,
    show_default=True,
    help="Sessions at once (needs --auto-close).",
)
@click.option("--auto-close", is_flag=True, default=False, help="Merge PRs and keep looping.")
@click.option("--dry-run", is_flag=True, default=False, help="Preview the next ticket's prompt.")
@click.pass_context
def next_cmd(
    ctx: click.Context, project_key: str | None, parallel: int, auto_close: bool, dry_run: bool
) -> None:
    """Pick the next eligible tickets and process them."""
    from autodev.cli._run import cmd_next

    config = get_config(ctx)
    project = resolve_project(config, project_key)
    _exit(cmd_next(config, project, parallel=parallel, auto_close=auto_close, dry_run=dry_run))


# ---------------------------------------------------------------------------
# batch / plan
# ---------------------------------------------------------------------------


@cli.command("batch")
@_PROJECT_OPTION
@click.option("--choice", default=None, help="Group to run: a number, 'all' or 'cancel'.")
@click.option("--auto-close", is_flag=True, default=False, help="Merge each group's PR.")
@click.option("--dry-run", is_flag=True, default=False, help="Preview prompts only.")
@click.pass_context
def batch_cmd(
    ctx: click.Context,
    project_key: str | None,
    choice: str | None,
    auto_close: bool,
    dry_run: bool,
) -> None:
    """Let the agent group tickets, then run the chosen groups."""
    from autodev.cli._batch import cmd_batch

    config = get_config(ctx)
    project = resolve_project(config, project_key)
    _exit(cmd_batch(config, project, choice=choice, auto_close=auto_close, dry_run=dry_run))


@cli.command("plan")
@_PROJECT_OPTION
@click.option(
    "--step",
    type=click.Choice(["analyze", "sprints", "tasks", "validate", "import"]),
    default=None,
    help="Step to run (default: the one after the last completed step).",
)
@click.option("--plan-file", default=None, help="Plan document (default: project plan_file).")
@click.option("--dry-run", is_flag=True, default=False, help="Import: preview, create nothing.")
@click.pass_context
def plan_cmd(
    ctx: click.Context,
    project_key: str | None,
    step: str | None,
    plan_file: str | None,
    dry_run: bool,
) -> None:
    """Turn a plan document into sprints and tickets, one step at a time."""
    from autodev.cli._plan import cmd_plan

    config = get_config(ctx)
    project = resolve_project(config, project_key)
    _exit(cmd_plan(config, project, step=step, plan_file=plan_file, dry_run=dry_run))


# ---------------------------------------------------------------------------
# sprint lifecycle
# ---------------------------------------------------------------------------


@cli.command("release")
@_PROJECT_OPTION
@click.option("--sprint", default=None, help="Sprint name (default: the active sprint).")
@click.option("--merge", is_flag=True, default=False, help="Merge the release PR.")
@click.pass_context
def release_cmd(
    ctx: click.Context, project_key: str | None, sprint: str | None, merge: bool
) -> None:
    """Open the PR from the sprint branch into trunk."""
    from autodev.cli._sprint import cmd_release

    config = get_config(ctx)
    _exit(cmd_release(config, resolve_project(config, project_key), sprint=sprint, merge=merge))


@cli.command("close-sprint")
@_PROJECT_OPTION
@click.option("--no-recap", is_flag=True, default=False, help="Skip the recap document.")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would happen.")
@click.pass_context
def close_sprint_cmd(
    ctx: click.Context, project_key: str | None, no_recap: bool, dry_run: bool
) -> None:
    """Close the active sprint and carry unfinished tickets over."""
    from autodev.cli._sprint import cmd_close_sprint

    config = get_config(ctx)
    project = resolve_project(config, project_key)
    _exit(cmd_close_sprint(config, project, recap=not no_recap, dry_run=dry_run))


# ---------------------------------------------------------------------------
# reporting
# ---------------------------------------------------------------------------


@cli.command("export")
@_PROJECT_OPTION
@click.option("--sprint", default=None, help="Only this sprint.")
@click.pass_context
def export_cmd(ctx: click.Context, project_key: str | None, sprint: str | None) -> None:
    """Write completed tickets to autodev/done-tasks.md."""
    from autodev.cli._report import cmd_export

    config = get_config(ctx)
    _exit(cmd_export(config, resolve_project(config, project_key), sprint=sprint))


@cli.command("verify")
@_PROJECT_OPTION
@click.pass_context
def verify_cmd(ctx: click.Context, project_key: str | None) -> None:
    """Audit completed work and file tickets for the problems found."""
    from autodev.cli._report import cmd_verify

    config = get_config(ctx)
    _exit(cmd_verify(config, resolve_project(config, project_key)))


@cli.command("metrics")
@_PROJECT_OPTION
@click.option("--last", default=5, show_default=True, help="Closed sprints for velocity.")
@click.option("--stale-days", default=7, show_default=True, help="Stale threshold in days.")
@click.option("--sprint", default=None, help="Lead time for this sprint only.")
@click.pass_context
def metrics_cmd(
    ctx: click.Context, project_key: str | None, last: int, stale_days: int, sprint: str | None
) -> None:
    """Velocity, lead time and stale in-progress tickets."""
    from autodev.cli._report import cmd_metrics

    config = get_config(ctx)
    project = resolve_project(config, project_key)
    _exit(cmd_metrics(config, project, last=last, stale_days=stale_days, sprint=sprint))


# ---------------------------------------------------------------------------
# init / mcp
# ---------------------------------------------------------------------------


@cli.command("init")
@_PROJECT_OPTION
@click.option("--force", is_flag=True, default=False, help="Overwrite existing context files.")
@click.pass_context
def init_cmd(ctx: click.Context, project_key: str | None, force: bool) -> None:
    """Create autodev/ context files and the CLAUDE.md section."""
    from autodev.cli._init import cmd_init

    config = get_config(ctx)
    _exit(cmd_init(resolve_project(config, project_key), force=force))


@cli.command("mcp")
@click.pass_context
def mcp_cmd(ctx: click.Context) -> None:
    """Serve tracker tools over stdio (Model Context Protocol)."""
    from autodev.cli._common import run_async
    from autodev.mcp_server import serve

    run_async(serve(get_config(ctx)))


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Manage the configuration file."""


@config_group.command("init")
@click.option("--non-interactive", is_flag=True, default=False, help="Read env vars only.")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
@click.pass_context
def config_init_cmd(ctx: click.Context, non_interactive: bool, force: bool) -> None:
    """Write a configuration file."""
    from autodev.cli._config_cmd import cmd_config_init

    path = ctx.find_root().obj.get("config_path")
    _exit(cmd_config_init(path, non_interactive=non_interactive, force=force))


@config_group.command("show")
@click.pass_context
def config_show_cmd(ctx: click.Context) -> None:
    """Show the effective configuration (secrets hidden)."""
    from autodev.cli._config_cmd import cmd_config_show

    _exit(cmd_config_show(get_config(ctx)))


if __name__ == "__main__":
    cli()
