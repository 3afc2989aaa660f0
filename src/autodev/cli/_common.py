"""Helpers shared by the command modules: config loading, project lookup, async entry."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from autodev.core.config import AutodevConfig, ProjectConfig, load_config
from autodev.core.exceptions import AutodevError, ConfigError, ConfigNotFoundError
from autodev.core.logging import configure_logging

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def fail(exc: AutodevError) -> None:
    """Print *exc* in red and exit with its code."""
    label = "Not configured" if isinstance(exc, ConfigNotFoundError) else "Error"
    err_console.print(f"[red]{label}:[/red] {escape(str(exc))}")
    sys.exit(int(exc.exit_code))


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)


def get_config(ctx: click.Context) -> AutodevConfig:
    obj = ctx.find_root().obj or {}
    if "config" not in obj:
        config = load_config(obj.get("config_path"))
        if obj.get("log_level") is None:
            # no --log-level: the [logging] section decides
            configure_logging(
                level=config.logging.level,
                json_output=obj.get("log_json", False) or config.logging.format == "json",
            )
        obj["config"] = config
    return obj["config"]


def resolve_project(config: AutodevConfig, key: str | None) -> ProjectConfig:
    """The named project, or the only configured one when no key is given."""
    if key:
        return config.project(key.upper())
    if len(config.projects) == 1:
        return next(iter(config.projects.values()))
    known = ", ".join(sorted(config.projects)) or "none"
    raise ConfigError(f"Pass --project KEY (configured projects: {known})")


def print_prompt(title: str, prompt: str) -> None:
    title = f"[bold yellow]DRY RUN[/bold yellow] {escape(title)}"
    console.print(Panel(Text(prompt), title=title, expand=False))
    console.print(f"[dim]{len(prompt)} characters[/dim]")
