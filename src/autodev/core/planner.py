"""
Planning pipeline: plan document -> analysis -> sprints -> tasks -> tracker.

Five steps, each resumable::

    analyze   plan + repository listing  -> autodev/plan-analysis.md
    sprints   plan (+ plan-answers.md)   -> autodev/plan-sprints.md
    tasks     one agent run per sprint   -> autodev/plan-sprint-<n>-tasks.json
    validate  local summary of the task files
    import    sprints, tickets, story points, labels, links -> plan-import-report.md

Progress is checkpointed in ``autodev/plan-state.json`` after every
step.  A step refuses to start (:class:`PlanStepError`) until the
artifact of the previous step exists, and it does so before the agent
is ever invoked.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from autodev.clients.agent import AgentRunner
from autodev.clients.git import Git
from autodev.clients.tracker import JiraClient
from autodev.core.config import ProjectConfig
from autodev.core.constants import BLOCKS_LINK_TYPE, CONTEXT_DIRNAME, MAX_PARALLEL, PLANNED_LABEL
from autodev.core.exceptions import AutodevError, GitError, PlanStepError
from autodev.prompts import build_analyze_prompt, build_sprints_prompt, build_tasks_prompt

logger = structlog.get_logger()

_SECTION_RE = re.compile(r"^## (Sprint \d+.*)$")
_TITLE_PREFIX_RE = re.compile(r"^Sprint \d+\s*[—–-]\s*")


class PlanStep(StrEnum):
    ANALYZE = "analyze"
    SPRINTS = "sprints"
    TASKS = "tasks"
    VALIDATE = "validate"
    IMPORT = "import"


STEP_ORDER = list(PlanStep)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class PlannedTask(BaseModel):
    """One task as written by the agent in a ``plan-sprint-<n>-tasks.json`` file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: str
    description: str = ""
    issue_type: str = Field(default="Task", alias="issueType")
    story_points: float | None = Field(default=None, alias="storyPoints")
    blocked_by: list[int] = Field(default_factory=list, alias="blockedBy")
    labels: list[str] = Field(default_factory=list)
    component: str = ""


_TASKS = TypeAdapter(list[PlannedTask])


class SprintImport(BaseModel):
    name: str
    sprint_id: int | None = None
    task_count: int = 0
    keys: list[str] = Field(default_factory=list)
    links: int = 0


class ImportReport(BaseModel):
    sprints: list[SprintImport] = Field(default_factory=list)
    total_tickets: int = 0
    total_links: int = 0
    dry_run: bool = False


class PlanState(BaseModel):
    """Checkpoint persisted between steps; never deleted."""

    current_step: PlanStep | None = None
    plan_file: str | None = None
    analysis_path: str | None = None
    sprints_path: str | None = None
    task_files: list[str] = Field(default_factory=list)
    sprint_count: int = 0
    report_path: str | None = None
    report: ImportReport | None = None
    updated_at: str | None = None

    @classmethod
    def load(cls, path: Path) -> PlanState:
        if not path.exists():
            return cls()
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise PlanStepError(f"Unreadable plan state {path}: {exc}") from exc

    def save(self, path: Path) -> None:
        self.updated_at = datetime.now(UTC).isoformat()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def next_step(self) -> PlanStep | None:
        if self.current_step is None:
            return PlanStep.ANALYZE
        idx = STEP_ORDER.index(self.current_step)
        return STEP_ORDER[idx + 1] if idx + 1 < len(STEP_ORDER) else None


@dataclass
class SprintSection:
    title: str
    content: str

    @property
    def short_title(self) -> str:
        return _TITLE_PREFIX_RE.sub("", self.title).strip()


def parse_sprint_sections(text: str) -> list[SprintSection]:
    """Split ``plan-sprints.md`` on its ``## Sprint <n> ...`` headings."""
    sections: list[SprintSection] = []
    current: SprintSection | None = None
    for line in text.splitlines():
        m = _SECTION_RE.match(line)
        if m:
            current = SprintSection(title=m.group(1).strip(), content=line + "\n")
            sections.append(current)
        elif current is not None:
            current.content += line + "\n"
    return sections


def load_tasks(path: Path) -> list[PlannedTask]:
    try:
        return _TASKS.validate_python(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise PlanStepError(f"Invalid task file {path.name}: {exc}") from exc


@dataclass
class SprintTasksResult:
    index: int
    title: str
    path: Path | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.path is not None


@dataclass
class SprintSummary:
    index: int
    title: str
    tasks: list[PlannedTask] | None = None  # None: no task file

    @property
    def points(self) -> float:
        return sum(t.story_points or 0 for t in self.tasks or [])


@dataclass
class PlanSummary:
    sprints: list[SprintSummary] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return sum(len(s.tasks or []) for s in self.sprints)

    @property
    def total_points(self) -> float:
        return sum(s.points for s in self.sprints)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class Planner:
    def __init__(
        self,
        *,
        project: ProjectConfig,
        agent: AgentRunner,
        git: Git,
        tracker: JiraClient | None = None,
        concurrency: int = MAX_PARALLEL,
    ) -> None:
        self.project = project
        self.agent = agent
        self.git = git
        self.tracker = tracker
        self.concurrency = concurrency
        self.dir = project.context_dir

    # Paths -------------------------------------------------------------

    @property
    def state_path(self) -> Path:
        return self.dir / "plan-state.json"

    @property
    def analysis_path(self) -> Path:
        return self.dir / "plan-analysis.md"

    @property
    def answers_path(self) -> Path:
        return self.dir / "plan-answers.md"

    @property
    def sprints_path(self) -> Path:
        return self.dir / "plan-sprints.md"

    @property
    def report_path(self) -> Path:
        return self.dir / "plan-import-report.md"

    def tasks_path(self, number: int) -> Path:
        return self.dir / f"plan-sprint-{number}-tasks.json"

    def _rel(self, path: Path) -> str:
        return f"{CONTEXT_DIRNAME}/{path.name}"

    # State -------------------------------------------------------------

    def state(self) -> PlanState:
        return PlanState.load(self.state_path)

    def _advance(self, step: PlanStep, **updates: object) -> PlanState:
        state = self.state()
        state = state.model_copy(update={"current_step": step, **updates})
        state.save(self.state_path)
        logger.info("plan_step_completed", step=step)
        return state

    def _require(self, path: Path, step: PlanStep) -> None:
        if not path.exists():
            raise PlanStepError(
                f"Run 'autodev plan --step {step}' first: {self._rel(path)} not found."
            )

    def _plan_text(self, plan_file: Path | str | None) -> tuple[Path, str]:
        candidate = plan_file or self.state().plan_file or self.project.plan_file
        if not candidate:
            raise PlanStepError("No plan document given. Pass --plan-file or set plan_file.")
        path = Path(candidate).expanduser()
        if not path.is_absolute():
            path = self.project.repo_path / path
        try:
            return path, path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanStepError(f"Cannot read plan document {path}: {exc}") from exc

    def _answers(self) -> str | None:
        if self.answers_path.exists():
            return self.answers_path.read_text(encoding="utf-8")
        return None

    async def _produce(self, prompt: str, output: Path) -> None:
        """Run the agent and require it to have written *output*."""
        output.unlink(missing_ok=True)
        await self.agent.run(prompt, self.project.repo_path)
        if not output.exists():
            raise PlanStepError(f"The agent did not produce {self._rel(output)}")

    # Steps -------------------------------------------------------------

    async def analyze(self, plan_file: Path | str | None = None) -> Path:
        path, plan = self._plan_text(plan_file)
        try:
            tree = "\n".join(await self.git.ls_files(200))
        except GitError:
            tree = "(unable to list files)"
        self.dir.mkdir(parents=True, exist_ok=True)
        prompt = build_analyze_prompt(self.project, plan, tree, self._rel(self.analysis_path))
        await self._produce(prompt, self.analysis_path)
        self._advance(
            PlanStep.ANALYZE, plan_file=str(path), analysis_path=str(self.analysis_path)
        )
        return self.analysis_path

    async def sprints(self, plan_file: Path | str | None = None) -> Path:
        self._require(self.analysis_path, PlanStep.ANALYZE)
        _, plan = self._plan_text(plan_file)
        prompt = build_sprints_prompt(
            self.project, plan, self._answers(), self._rel(self.sprints_path)
        )
        await self._produce(prompt, self.sprints_path)
        self._advance(PlanStep.SPRINTS, sprints_path=str(self.sprints_path))
        return self.sprints_path

    def _sections(self) -> list[SprintSection]:
        self._require(self.sprints_path, PlanStep.SPRINTS)
        sections = parse_sprint_sections(self.sprints_path.read_text(encoding="utf-8"))
        if not sections:
            raise PlanStepError(f"No '## Sprint <n>' sections in {self._rel(self.sprints_path)}")
        return sections

    async def tasks(self, plan_file: Path | str | None = None) -> list[SprintTasksResult]:
        """Detail every sprint concurrently; one sprint failing does not stop the others."""
        sections = self._sections()
        _, plan = self._plan_text(plan_file)
        answers = self._answers()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _detail(idx: int, section: SprintSection) -> SprintTasksResult:
            output = self.tasks_path(idx + 1)
            prompt = build_tasks_prompt(
                self.project,
                plan,
                section.content,
                [s.content for s in sections[:idx]],
                answers,
                self._rel(output),
            )
            async with semaphore:
                logger.info("plan_sprint_detailing", sprint=section.title)
                try:
                    await self._produce(prompt, output)
                    load_tasks(output)
                except AutodevError as exc:
                    logger.error("plan_sprint_failed", sprint=section.title, error=str(exc))
                    return SprintTasksResult(idx + 1, section.title, error=str(exc))
            return SprintTasksResult(idx + 1, section.title, path=output)

        results = await asyncio.gather(*(_detail(i, s) for i, s in enumerate(sections)))
        self._advance(
            PlanStep.TASKS,
            task_files=[str(r.path) for r in results if r.path],
            sprint_count=len(sections),
        )
        logger.info(
            "plan_tasks_generated", ok=sum(r.ok for r in results), sprints=len(sections)
        )
        return list(results)

    def _task_files(self, sections: list[SprintSection]) -> None:
        if not any(self.tasks_path(i + 1).exists() for i in range(len(sections))):
            raise PlanStepError(
                f"Run 'autodev plan --step {PlanStep.TASKS}' first: no task files found."
            )

    def validate(self) -> PlanSummary:
        """Local summary of the task files; no external calls."""
        sections = self._sections()
        self._task_files(sections)
        summary = PlanSummary()
        for idx, section in enumerate(sections):
            path = self.tasks_path(idx + 1)
            tasks = load_tasks(path) if path.exists() else None
            summary.sprints.append(SprintSummary(idx + 1, section.title, tasks))
        self._advance(PlanStep.VALIDATE)
        return summary

    async def import_plan(self, *, dry_run: bool = False) -> ImportReport:
        sections = self._sections()
        self._task_files(sections)
        if self.tracker is None and not dry_run:
            raise PlanStepError("Importing needs a tracker connection")

        report = ImportReport(dry_run=dry_run)
        board: int | None = None
        for idx, section in enumerate(sections):
            path = self.tasks_path(idx + 1)
            name = f"Sprint {idx + 1} — {section.short_title}"
            if not path.exists():
                logger.warning("plan_sprint_without_tasks", sprint=name)
                continue
            tasks = load_tasks(path)
            if dry_run:
                logger.info("plan_import_preview", sprint=name, tasks=len(tasks))
                report.sprints.append(SprintImport(name=name, task_count=len(tasks)))
                report.total_tickets += len(tasks)
                continue

            assert self.tracker is not None
            if board is None:
                board = await self.tracker.board_id(self.project.key)
            imported = await self._import_sprint(board, name, tasks)
            report.sprints.append(imported)
            report.total_tickets += imported.task_count
            report.total_links += imported.links

        self.report_path.write_text(render_import_report(self.project.key, report), "utf-8")
        if not dry_run:
            self._advance(
                PlanStep.IMPORT, report_path=str(self.report_path), report=report
            )
        return report

    async def _import_sprint(self, board: int, name: str, tasks: list[PlannedTask]) -> SprintImport:
        tracker = self.tracker
        assert tracker is not None
        sprint = await tracker.create_sprint(board, name)

        keys: list[str] = []
        for task in tasks:
            key = await tracker.create_item(
                self.project.key, task.summary, task.description, task.issue_type
            )
            keys.append(key)
            if task.story_points:
                try:
                    await tracker.update_fields(
                        key, {self.project.story_points_field: task.story_points}
                    )
                except AutodevError as exc:
                    logger.warning("story_points_failed", key=key, error=str(exc))
            try:
                await tracker.add_labels(key, [PLANNED_LABEL, *task.labels])
            except AutodevError as exc:
                logger.warning("labels_failed", key=key, error=str(exc))

        if keys:
            await tracker.move_to_sprint(sprint.id, keys)

        links = 0
        for j, task in enumerate(tasks):
            for dep in task.blocked_by:
                if 0 <= dep < len(keys) and dep != j:
                    await tracker.create_link(keys[j], keys[dep], BLOCKS_LINK_TYPE)
                    links += 1

        logger.info("plan_sprint_imported", sprint=name, tickets=len(keys), links=links)
        return SprintImport(
            name=name, sprint_id=sprint.id, task_count=len(keys), keys=keys, links=links
        )

    async def run_step(
        self, step: PlanStep, *, plan_file: Path | str | None = None, dry_run: bool = False
    ) -> object:
        if step == PlanStep.ANALYZE:
            return await self.analyze(plan_file)
        if step == PlanStep.SPRINTS:
            return await self.sprints(plan_file)
        if step == PlanStep.TASKS:
            return await self.tasks(plan_file)
        if step == PlanStep.VALIDATE:
            return self.validate()
        return await self.import_plan(dry_run=dry_run)


def render_import_report(
    project_key: str, report: ImportReport, *, today: str | None = None
) -> str:
    today = today or datetime.now(UTC).date().isoformat()
    lines = [
        f"# Import report: {project_key}",
        "",
        f"> Generated {today} by autodev plan" + (" (dry run)" if report.dry_run else ""),
        "",
        f"**Total:** {report.total_tickets} tickets in {len(report.sprints)} sprints, "
        f"{report.total_links} dependency links",
        "",
    ]
    for s in report.sprints:
        keys = f"{s.keys[0]} → {s.keys[-1]}" if s.keys else "N/A"
        lines.append(f"- **{s.name}**: {s.task_count} tickets ({keys})")
    return "\n".join(lines) + "\n"
