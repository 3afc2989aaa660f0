"""
Batch mode: several tickets, one agent session, one branch.

1. **collect**: every eligible ticket of the project (no limit).
2. **propose**: the agent groups them; its answer must contain a JSON
   array of ``{name, reason, tickets}`` objects.
3. **choose**: the operator picks one group, all of them, or cancels.
4. **execute**: each chosen group runs as a shared-branch session.  The
   agent commits once per ticket using the commit convention of
   :mod:`autodev.core.commits`; tickets with a matching commit succeed,
   the others are reopened.  A group fails only when no ticket got a
   commit.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from autodev.clients.agent import AgentRunner
from autodev.clients.git import Git
from autodev.clients.tracker import JiraClient, todo_jql
from autodev.core.commits import attribute_commits
from autodev.core.config import ProjectConfig
from autodev.core.constants import COMMENT_PREFIX, PROCESSED_LABEL
from autodev.core.exceptions import AutodevError, GroupingError, IntegrationConflictError
from autodev.core.integration import IntegrationPipeline, PullRequestDraft
from autodev.core.models import EvaluationResult, Outcome, WorkItem
from autodev.core.resolver import select_eligible
from autodev.core.session import ExecutionSession
from autodev.prompts import build_batch_prompt, build_grouping_prompt

logger = structlog.get_logger()


class TicketGroup(BaseModel):
    name: str
    reason: str = ""
    tickets: list[str] = Field(default_factory=list)


_GROUPS = TypeAdapter(list[TicketGroup])


# ---------------------------------------------------------------------------
# Parsing the agent's answer
# ---------------------------------------------------------------------------


def extract_json_array(text: str) -> list:
    """First top-level JSON array embedded in *text* (prose and fences are skipped)."""
    decoder = json.JSONDecoder()
    start = text.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(value, list):
                return value
        start = text.find("[", start + 1)
    raise GroupingError(f"The agent did not return a JSON array. Response:\n{text[:500]}")


def parse_groups(text: str) -> list[TicketGroup]:
    raw = extract_json_array(text)
    try:
        return _GROUPS.validate_python(raw)
    except ValidationError as exc:
        raise GroupingError(f"Invalid group list from the agent: {exc}") from exc


def normalize_groups(
    groups: Sequence[TicketGroup], known: Mapping[str, WorkItem]
) -> list[TicketGroup]:
    """Drop unknown and repeated keys, then empty groups."""
    seen: set[str] = set()
    cleaned: list[TicketGroup] = []
    for group in groups:
        keys = []
        for key in group.tickets:
            key = key.strip().upper()
            if key in known and key not in seen:
                seen.add(key)
                keys.append(key)
            else:
                logger.debug("group_key_dropped", group=group.name, key=key)
        if keys:
            cleaned.append(group.model_copy(update={"tickets": keys}))
    return cleaned


def resolve_choice(choice: str, groups: Sequence[TicketGroup]) -> list[TicketGroup]:
    """Map an operator answer (``1``..``n``, ``all`` or ``cancel``) to groups."""
    answer = choice.strip().lower()
    if answer in ("", "c", "cancel", "q", "quit"):
        return []
    if answer in ("a", "all"):
        return list(groups)
    if answer.isdigit() and 1 <= int(answer) <= len(groups):
        return [groups[int(answer) - 1]]
    raise GroupingError(f"Invalid choice {choice!r}: expected 1-{len(groups)}, 'all' or 'cancel'")


# ---------------------------------------------------------------------------
# Per-ticket attribution
# ---------------------------------------------------------------------------


@dataclass
class BatchEvaluation:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    commits: dict[str, list[str]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.succeeded)


def evaluate_batch_result(keys: Sequence[str], log_lines: Sequence[str]) -> BatchEvaluation:
    commits = attribute_commits(keys, log_lines)
    return BatchEvaluation(
        succeeded=[k for k in keys if commits[k]],
        failed=[k for k in keys if not commits[k]],
        commits=commits,
    )


def build_batch_draft(
    project_key: str,
    group: TicketGroup,
    items: Sequence[WorkItem],
    evaluation: BatchEvaluation,
    browse_url: Callable[[str], str],
) -> PullRequestDraft:
    lines = [f"## Batch: {group.name}", ""]
    if group.reason:
        lines += [f"**Why grouped:** {group.reason}", ""]
    lines += ["## Tickets", ""]
    for item in items:
        status = "OK" if evaluation.commits.get(item.key) else "FAILED"
        lines.append(f"- {status} [{item.key}]({browse_url(item.key)}): {item.summary}")
    lines += ["", "---", "Generated by autodev batch"]
    return PullRequestDraft(
        title=f"batch({project_key}): {group.name}",
        body="\n".join(lines),
        close_keys=list(evaluation.succeeded),
    )


@dataclass
class GroupOutcome:
    name: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pr_url: str = ""
    reason: str = ""
    prompt: str = ""  # dry runs only

    @property
    def ok(self) -> bool:
        return bool(self.prompt) or bool(self.succeeded)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

Chooser = Callable[[list[TicketGroup], Mapping[str, WorkItem]], str]


class BatchGrouper:
    def __init__(
        self,
        *,
        project: ProjectConfig,
        tracker: JiraClient,
        git: Git,
        agent: AgentRunner,
        pipeline: IntegrationPipeline,
    ) -> None:
        self.project = project
        self.tracker = tracker
        self.git = git
        self.agent = agent
        self.pipeline = pipeline

    async def collect(self) -> list[WorkItem]:
        candidates = await self.tracker.search_items(todo_jql(self.project), 50)
        keys = select_eligible(candidates, limit=None)
        by_key = {i.key: i for i in candidates}
        items = [by_key[k] for k in keys]
        logger.info("batch_collected", candidates=len(candidates), eligible=len(items))
        return items

    async def propose(self, items: Sequence[WorkItem]) -> list[TicketGroup]:
        prompt = build_grouping_prompt(self.project, items)
        logger.info("batch_grouping_requested", items=len(items), prompt_chars=len(prompt))
        answer = await self.agent.ask(prompt, self.project.repo_path)
        groups = normalize_groups(parse_groups(answer), {i.key: i for i in items})
        logger.info("batch_groups_proposed", groups=len(groups))
        return groups

    async def run(
        self, choose: Chooser, *, auto_close: bool = False, dry_run: bool = False
    ) -> list[GroupOutcome]:
        items = await self.collect()
        if not items:
            logger.info("no_eligible_items", project=self.project.key)
            return []
        groups = await self.propose(items)
        if not groups:
            logger.info("no_groups_proposed")
            return []
        by_key = {i.key: i for i in items}
        selected = resolve_choice(choose(groups, by_key), groups)
        if not selected:
            logger.info("batch_cancelled")
            return []

        outcomes = []
        for group in selected:
            outcomes.append(
                await self.execute_group(group, by_key, auto_close=auto_close, dry_run=dry_run)
            )
        return outcomes

    async def execute_group(
        self,
        group: TicketGroup,
        by_key: Mapping[str, WorkItem],
        *,
        auto_close: bool = False,
        dry_run: bool = False,
    ) -> GroupOutcome:
        items = [by_key[k] for k in group.tickets if k in by_key]
        outcome = GroupOutcome(group.name)
        log = logger.bind(key=",".join(i.key for i in items), group=group.name)
        if not items:
            outcome.reason = "group has no valid tickets"
            log.error("batch_group_empty")
            return outcome

        prompt = build_batch_prompt(self.project, items)
        if dry_run:
            outcome.prompt = prompt
            log.info("batch_dry_run", prompt_chars=len(prompt))
            return outcome

        for item in items:
            try:
                await self.tracker.transition(item.key, self.project.transitions.start)
            except AutodevError as exc:
                log.warning("start_transition_failed", item=item.key, error=str(exc))

        keys = [i.key for i in items]
        try:
            outcome = await self._run_session(group, items, prompt, auto_close=auto_close)
        except AutodevError as exc:
            log.error("batch_group_failed", error=str(exc))
            outcome = GroupOutcome(group.name, failed=keys, reason=str(exc))

        await self._settle(outcome, group)
        log.info(
            "batch_group_finished",
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
            pr=outcome.pr_url or None,
        )
        return outcome

    async def _run_session(
        self, group: TicketGroup, items: list[WorkItem], prompt: str, *, auto_close: bool
    ) -> GroupOutcome:
        keys = [i.key for i in items]
        session = ExecutionSession(
            items,
            git=self.git,
            agent=self.agent,
            base=self.project.trunk,
            group_name=group.name,
        )
        async with session:
            result = await session.execute(prompt)
            if result.outcome in (Outcome.BLOCKED, Outcome.FAILED):
                return GroupOutcome(group.name, failed=keys, reason=result.reason)

            evaluation = evaluate_batch_result(keys, await session.git.log_range(session.base))
            if not evaluation.success:
                session.finish(EvaluationResult.failed("No ticket produced a commit"))
                return GroupOutcome(group.name, failed=keys, reason="No ticket produced a commit")

            draft = build_batch_draft(
                self.project.key, group, items, evaluation, self.tracker.browse_url
            )
            try:
                pr = await self.pipeline.integrate(
                    session, result, auto_close=auto_close, draft=draft
                )
            except IntegrationConflictError as exc:
                session.keep_branch = True
                session.finish(EvaluationResult.failed(str(exc)))
                session.log.error("integration_conflict", branch=session.branch, error=str(exc))
                return GroupOutcome(group.name, failed=evaluation.failed)
            except AutodevError as exc:
                session.finish(EvaluationResult.failed(str(exc)))
                session.log.error("integration_failed", error=str(exc))
                return GroupOutcome(group.name, failed=keys, reason=str(exc))
            return GroupOutcome(
                group.name,
                succeeded=evaluation.succeeded,
                failed=evaluation.failed,
                pr_url=pr.url,
            )

    async def _settle(self, outcome: GroupOutcome, group: TicketGroup) -> None:
        """Label the tickets that made it, reopen the ones that did not."""
        for key in outcome.succeeded:
            try:
                await self.tracker.add_labels(key, [PROCESSED_LABEL])
            except AutodevError as exc:
                logger.warning("label_failed", key=key, error=str(exc))
        for key in outcome.failed:
            reason = outcome.reason or "no commit was produced for this ticket"
            try:
                await self.tracker.comment(
                    key,
                    f'{COMMENT_PREFIX} Batch "{group.name}": {reason}. '
                    "Manual intervention required.",
                )
                await self.tracker.transition(key, self.project.transitions.reopen)
            except AutodevError as exc:
                logger.warning("reopen_failed", key=key, error=str(exc))
