"""autodev config init / autodev config show."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from rich.prompt import Confirm, Prompt
from rich.table import Table

from autodev.cli._common import console
from autodev.core.config import AutodevConfig, config_file_path, save_config
from autodev.core.exceptions import ConfigError


def _env(*names: str) -> str:
    for name in names:
        v = os.environ.get(name, "")
        if v:
            return v
    return ""


def _ask(label: str, default: str = "", *, secret: bool = False) -> str:
    return Prompt.ask(f"[bold]{label}[/bold]", default=default or None, password=secret) or ""


def build_config_data(
    *,
    base_url: str,
    email: str,
    api_token: str,
    github_token: str = "",
    project_key: str = "",
    repo_path: str = "",
    gh_repo: str = "",
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "jira": {"base_url": base_url, "email": email, "api_token": api_token},
    }
    if github_token:
        data["github"] = {"token": github_token}
    if project_key:
        data["projects"] = {
            project_key.upper(): {"repo_path": repo_path, "gh_repo": gh_repo, "trunk": "main"}
        }
    # validate before anything touches the disk
    try:
        AutodevConfig.model_validate(data)
    except ValueError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    return data


def cmd_config_init(path: Path | None, *, non_interactive: bool, force: bool) -> int:
    cfg_path = path or config_file_path()
    if cfg_path.exists() and not force:
        if non_interactive or not Confirm.ask(f"{cfg_path} exists. Overwrite?", default=False):
            console.print(f"Keeping {cfg_path}.")
            return 0

    base_url = _env("AUTODEV_JIRA_BASE_URL", "JIRA_BASE_URL")
    email = _env("AUTODEV_JIRA_EMAIL", "JIRA_EMAIL")
    api_token = _env("AUTODEV_JIRA_API_TOKEN", "JIRA_API_TOKEN")
    github_token = _env("AUTODEV_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")
    project_key = repo_path = gh_repo = ""

    if non_interactive:
        if not (base_url and email and api_token):
            console.print(
                "[red]Missing AUTODEV_JIRA_BASE_URL, AUTODEV_JIRA_EMAIL "
                "or AUTODEV_JIRA_API_TOKEN.[/red]"
            )
            sys.exit(2)
    else:
        console.print("[bold]autodev configuration[/bold]\n")
        base_url = _ask("Jira site URL", base_url or "https://your-site.atlassian.net")
        email = _ask("Jira account email", email)
        api_token = api_token or _ask("Jira API token", secret=True)
        github_token = github_token or _ask("GitHub token (blank to skip)", secret=True)
        project_key = _ask("Project key (blank to skip)")
        if project_key:
            repo_path = _ask("Local repository path", str(Path.cwd()))
            gh_repo = _ask("GitHub repository (owner/name)")

    data = build_config_data(
        base_url=base_url,
        email=email,
        api_token=api_token,
        github_token=github_token,
        project_key=project_key,
        repo_path=repo_path,
        gh_repo=gh_repo,
    )
    written = save_config(data, cfg_path)
    console.print(f"[green]Saved[/green] {written}")
    return 0


def cmd_config_show(config: AutodevConfig) -> int:
    console.print(f"[bold]Config:[/bold] {config._config_path}")
    console.print(f"Jira: {config.jira.base_url} ({config.jira.email})")
    console.print(f"GitHub token: {'set' if config.github.token else '[red]missing[/red]'}")
    console.print(
        "Confluence: "
        + (f"space {config.confluence.space_id}" if config.confluence.enabled else "disabled")
    )
    d = config.dispatch
    console.print(
        f"Dispatch: max_parallel={d.max_parallel} cooldown={d.cooldown_seconds:g}s "
        f"merge_retries={d.merge_retries}"
    )

    table = Table(title="Projects")
    table.add_column("Key", style="bold")
    table.add_column("Repository")
    table.add_column("GitHub")
    table.add_column("Trunk")
    table.add_column("Sprint branches")
    for key, project in sorted(config.projects.items()):
        table.add_row(
            key,
            str(project.repo_path),
            project.gh_repo,
            project.trunk,
            "yes" if project.sprint_branches else "no",
        )
    console.print(table)
    return 0
