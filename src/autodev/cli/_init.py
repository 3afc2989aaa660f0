"""autodev init: bootstrap the repository's autodev/ context files."""

from __future__ import annotations

from autodev.cli._common import console
from autodev.core.config import ProjectConfig
from autodev.core.context import ensure_claude_md, validate_completeness, write_templates


def cmd_init(project: ProjectConfig, *, force: bool) -> int:
    written = write_templates(project, overwrite=force)
    for path in written:
        console.print(f"[green]created[/green] {path.relative_to(project.repo_path)}")
    if ensure_claude_md(project):
        console.print("[green]updated[/green] CLAUDE.md")

    incomplete = validate_completeness(project)
    if incomplete:
        console.print("\nFill in these files before running tickets:")
        for name in incomplete:
            console.print(f"  - autodev/{name}")
    else:
        console.print("\n[green]Project context is complete.[/green]")
    return 0
