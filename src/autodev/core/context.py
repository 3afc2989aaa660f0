"""Per-repository context files under ``autodev/`` and the CLAUDE.md pointer."""

from __future__ import annotations

from importlib.resources import files
from pathlib import Path

import structlog

from autodev.core.config import ProjectConfig
from autodev.core.exceptions import ContextIncompleteError

logger = structlog.get_logger()

# template name -> file written under autodev/
TEMPLATE_MAP = {
    "index.md": "index.md",
    "memory.md": "memory.md",
    "soul.md": "soul.md",
    "plan.md": "plan.md",
    "sprint.md": "sprint-current.md",
}
REQUIRED_FILES = ("memory.md", "soul.md", "plan.md", "sprint-current.md")

CLAUDE_MD_HEADING = "## autodev context"
CLAUDE_MD_SECTION = f"""

{CLAUDE_MD_HEADING}

This project uses autodev to implement tracker tickets automatically.
Read these files for project context:

- Project memory: `autodev/memory.md`
- Project identity: `autodev/soul.md`
- Current plan: `autodev/plan.md`
- Current sprint: `autodev/sprint-current.md`
- Index: `autodev/index.md`
"""


def render_template(name: str, project_key: str) -> str:
    text = files("autodev.templates").joinpath(name).read_text("utf-8")
    return text.replace("{PROJECT_KEY}", project_key)


def write_templates(project: ProjectConfig, *, overwrite: bool = False) -> list[Path]:
    """Write the context templates; existing files are kept unless *overwrite*."""
    project.context_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for template, target in TEMPLATE_MAP.items():
        path = project.context_dir / target
        if path.exists() and not overwrite:
            continue
        path.write_text(render_template(template, project.key), encoding="utf-8")
        written.append(path)
    if written:
        logger.info("context_templates_written", files=[p.name for p in written])
    return written


def ensure_claude_md(project: ProjectConfig) -> bool:
    """Create CLAUDE.md if needed and append the autodev section once."""
    path = project.repo_path / "CLAUDE.md"
    if not path.exists():
        path.write_text(f"# {project.key}\n", encoding="utf-8")
        logger.info("claude_md_created", path=str(path))
    if CLAUDE_MD_HEADING in path.read_text(encoding="utf-8"):
        return False
    with open(path, "a", encoding="utf-8") as f:
        f.write(CLAUDE_MD_SECTION)
    logger.info("claude_md_section_appended", path=str(path))
    return True


def _has_content(text: str) -> bool:
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("<!--") and line.endswith("-->"):
            continue
        return True
    return False


def validate_completeness(project: ProjectConfig) -> list[str]:
    """Names of required context files that are missing or still placeholders."""
    incomplete = []
    for name in REQUIRED_FILES:
        path = project.context_dir / name
        if not path.is_file() or not _has_content(path.read_text(encoding="utf-8")):
            incomplete.append(name)
    return incomplete


def ensure_project_context(project: ProjectConfig, *, skip_validation: bool = False) -> None:
    """
    Prepare the repository context before an execution command.

    Missing context files are created from templates, CLAUDE.md gets its
    autodev section, then every required file must hold real content.

    Raises:
        ContextIncompleteError: if a required file is still a template.
    """
    if not project.context_dir.exists():
        write_templates(project)
    ensure_claude_md(project)
    if skip_validation:
        return
    incomplete = validate_completeness(project)
    if incomplete:
        raise ContextIncompleteError(incomplete)
