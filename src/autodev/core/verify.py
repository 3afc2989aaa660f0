"""
Post-sprint verification.

The agent audits the repository against the exported done-tasks file
(and the plan, when there is one) and writes a markdown report.  Each
``### [CRITICAL]`` / ``### [WARNING]`` block of that report whose action
is ``TICKET_NEEDED`` becomes a Bug or Task in the acceptance sprint.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import structlog

from autodev.clients.agent import AgentRunner
from autodev.clients.tracker import JiraClient
from autodev.core.config import ProjectConfig
from autodev.core.constants import VERIFY_SPRINT_NAME
from autodev.core.exceptions import AgentError, AutodevError
from autodev.core.export import export_done_tasks
from autodev.prompts import build_verify_prompt

logger = structlog.get_logger()

VERIFY_REPORT_FILENAME = "verify-report.md"
TICKET_NEEDED = "TICKET_NEEDED"

_HEADING_RE = re.compile(r"^### \[(CRITICAL|WARNING)\]\s*(.+)$")
_FIELD_RE = re.compile(r"^- \*\*(Tickets|Problem|Suggestion|Action)\*\*:\s*(.*)$")


class Severity(StrEnum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"


@dataclass
class VerifyProblem:
    severity: Severity
    title: str
    tickets: list[str] = field(default_factory=list)
    problem: str = ""
    suggestion: str = ""
    action: str = ""

    @property
    def needs_ticket(self) -> bool:
        return self.action.strip().upper() == TICKET_NEEDED

    @property
    def issue_type(self) -> str:
        return "Bug" if self.severity == Severity.CRITICAL else "Task"

    def description(self) -> str:
        return "\n".join(
            [
                "Detected by autodev verify",
                "",
                f"Severity: {self.severity}",
                f"Related tickets: {', '.join(self.tickets) or 'none'}",
                "",
                f"Problem: {self.problem}",
                "",
                f"Suggestion: {self.suggestion}",
            ]
        )


def parse_verify_report(text: str) -> list[VerifyProblem]:
    """Extract problem blocks; a ``## `` heading closes the current block."""
    problems: list[VerifyProblem] = []
    current: VerifyProblem | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if m := _HEADING_RE.match(line):
            current = VerifyProblem(Severity(m.group(1)), m.group(2).strip())
            problems.append(current)
            continue
        if line.startswith("## "):
            current = None
            continue
        if current is None:
            continue
        if m := _FIELD_RE.match(line):
            name, value = m.group(1), m.group(2).strip()
            if name == "Tickets":
                current.tickets = [k.strip() for k in value.split(",") if k.strip()]
            elif name == "Problem":
                current.problem = value
            elif name == "Suggestion":
                current.suggestion = value
            else:
                current.action = value
    return problems


@dataclass
class VerifyResult:
    report_path: Path
    problems: list[VerifyProblem] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    sprint_name: str | None = None

    @property
    def critical(self) -> int:
        return sum(1 for p in self.problems if p.severity == Severity.CRITICAL)

    @property
    def warnings(self) -> int:
        return sum(1 for p in self.problems if p.severity == Severity.WARNING)


async def create_problem_tickets(
    tracker: JiraClient, project: ProjectConfig, problems: list[VerifyProblem]
) -> list[str]:
    keys: list[str] = []
    for problem in problems:
        if not problem.needs_ticket:
            continue
        try:
            key = await tracker.create_item(
                project.key,
                f"[Verify] {problem.title}"[:255],
                problem.description(),
                problem.issue_type,
            )
        except AutodevError as exc:
            logger.warning("verify_ticket_failed", title=problem.title, error=str(exc))
            continue
        keys.append(key)
    return keys


async def move_to_acceptance_sprint(
    tracker: JiraClient, project: ProjectConfig, keys: list[str]
) -> str | None:
    """Best-effort: put *keys* in the acceptance sprint, creating and starting it."""
    if not keys:
        return None
    try:
        board = await tracker.board_id(project.key)
        sprint = await tracker.find_sprint(board, VERIFY_SPRINT_NAME)
        if sprint is None:
            sprint = await tracker.create_sprint(board, VERIFY_SPRINT_NAME)
        if sprint.state != "active":
            await tracker.start_sprint(sprint.id)
        await tracker.move_to_sprint(sprint.id, keys)
    except AutodevError as exc:
        logger.warning("verify_sprint_failed", error=str(exc))
        return None
    return sprint.name


async def run_verify(
    tracker: JiraClient, agent: AgentRunner, project: ProjectConfig
) -> VerifyResult | None:
    """None when no ticket is done yet."""
    done_path = await export_done_tasks(tracker, project)
    if done_path is None:
        return None

    plan: str | None = None
    if project.plan_file:
        plan_path = Path(project.plan_file)
        if not plan_path.is_absolute():
            plan_path = project.repo_path / plan_path
        if plan_path.is_file():
            plan = plan_path.read_text(encoding="utf-8")

    report_path = project.context_dir / VERIFY_REPORT_FILENAME
    report_path.unlink(missing_ok=True)
    output = f"autodev/{VERIFY_REPORT_FILENAME}"
    prompt = build_verify_prompt(
        project, done_path.read_text(encoding="utf-8"), plan, output
    )
    logger.info("verify_started", project=project.key, prompt_chars=len(prompt))
    await agent.run(prompt, project.repo_path)
    if not report_path.exists():
        raise AgentError(f"The agent did not write {output}")

    problems = parse_verify_report(report_path.read_text(encoding="utf-8"))
    result = VerifyResult(report_path, problems)
    result.created = await create_problem_tickets(tracker, project, problems)
    result.sprint_name = await move_to_acceptance_sprint(tracker, project, result.created)
    logger.info(
        "verify_finished",
        critical=result.critical,
        warnings=result.warnings,
        created=len(result.created),
    )
    return result
