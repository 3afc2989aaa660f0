"""
Concurrency dispatcher: the ``run`` and ``next`` loops.

``process_item`` takes one ticket through fetch, checks, session,
evaluation and integration.  ``run_next`` loops over eligible tickets,
either one at a time on the shared checkout or up to ``max_parallel``
at a time in isolated worktrees.

Per-item failures never escape: they are commented on the ticket, the
ticket is reopened and the loop counts them.  Keys that failed are
remembered for the rest of the invocation and never selected again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from autodev.clients.agent import AgentRunner
from autodev.clients.git import Git
from autodev.clients.tracker import JiraClient, todo_jql
from autodev.core.config import DispatchConfig, ProjectConfig
from autodev.core.constants import COMMENT_PREFIX, REASON_MAX_CHARS, ExitCode
from autodev.core.exceptions import AutodevError, IntegrationConflictError
from autodev.core.integration import IntegrationPipeline
from autodev.core.models import EvaluationResult, Outcome, WorkItem
from autodev.core.resolver import select_eligible, skip_reason
from autodev.core.session import ExecutionSession
from autodev.core.sprint import SprintManager
from autodev.prompts import build_item_prompt

logger = structlog.get_logger()


@dataclass
class ItemOutcome:
    """What happened to one ticket in this invocation."""

    key: str
    outcome: Outcome | None = None  # None: not executed
    reason: str = ""
    pr_url: str = ""
    sprint_name: str | None = None
    prompt: str = ""  # filled in for dry runs

    @property
    def dry_run(self) -> bool:
        return bool(self.prompt)

    @property
    def ok(self) -> bool:
        return self.dry_run or self.outcome in (Outcome.SUCCESS, Outcome.ALREADY_DONE)


@dataclass
class RunSummary:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def record(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)
        (self.succeeded if outcome.ok else self.failed).append(outcome.key)

    @property
    def exit_code(self) -> ExitCode:
        if self.failed and not self.succeeded:
            return ExitCode.ERROR
        return ExitCode.SUCCESS


class Dispatcher:
    """Runs execution sessions for one project."""

    def __init__(
        self,
        *,
        project: ProjectConfig,
        tracker: JiraClient,
        git: Git,
        agent: AgentRunner,
        pipeline: IntegrationPipeline,
        sprints: SprintManager | None = None,
        dispatch: DispatchConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.project = project
        self.tracker = tracker
        self.git = git
        self.agent = agent
        self.pipeline = pipeline
        self.sprints = sprints
        self.dispatch = dispatch or DispatchConfig()
        self.blocked_keys: set[str] = set()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def next_keys(self, limit: int = 1) -> list[str]:
        candidates = await self.tracker.search_items(todo_jql(self.project), 50)
        return select_eligible(
            candidates,
            self.blocked_keys,
            limit,
            skip_same_epic=self.dispatch.skip_same_epic,
        )

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------

    async def process_item(
        self,
        key: str,
        *,
        dry_run: bool = False,
        auto_close: bool = False,
        isolated: bool = False,
    ) -> ItemOutcome:
        log = logger.bind(key=key)
        log.info("item_started", dry_run=dry_run, auto_close=auto_close, isolated=isolated)

        try:
            item = await self.tracker.fetch_item(key)
        except AutodevError as exc:
            log.error("item_fetch_failed", error=str(exc))
            return ItemOutcome(key, Outcome.FAILED, reason=str(exc))

        reason = skip_reason(item)
        if reason is not None:
            log.info("item_skipped", reason=reason)
            return ItemOutcome(key, reason=reason, sprint_name=item.sprint_name)

        prompt = build_item_prompt(self.project, item)
        if dry_run:
            log.info("item_dry_run", prompt_chars=len(prompt), links=len(item.links))
            return ItemOutcome(key, reason="dry run", sprint_name=item.sprint_name, prompt=prompt)

        try:
            await self.tracker.transition(key, self.project.transitions.start)
            base = await self._base_for(item)
        except AutodevError as exc:
            log.error("item_start_failed", error=str(exc))
            return ItemOutcome(key, Outcome.FAILED, reason=str(exc), sprint_name=item.sprint_name)

        try:
            outcome = await self._execute(
                item, prompt, base, auto_close=auto_close, isolated=isolated
            )
        except AutodevError as exc:
            log.error("session_failed", error=str(exc))
            outcome = ItemOutcome(key, Outcome.FAILED, reason=str(exc))
        outcome.sprint_name = item.sprint_name

        if outcome.outcome == Outcome.ALREADY_DONE:
            await self._close_already_done(item, outcome.reason)
        elif not outcome.ok:
            await self._reopen(item, outcome.reason, blocked=outcome.outcome == Outcome.BLOCKED)
        log.info("item_finished", outcome=outcome.outcome, pr=outcome.pr_url or None)
        return outcome

    async def _base_for(self, item: WorkItem) -> str:
        if self.sprints is None or not self.project.sprint_branches:
            return self.project.trunk
        # sprint branch creation touches the shared checkout
        async with self.pipeline.lock.ticket(f"base:{item.key}"):
            return await self.sprints.base_for(item)

    async def _execute(
        self, item: WorkItem, prompt: str, base: str, *, auto_close: bool, isolated: bool
    ) -> ItemOutcome:
        session = ExecutionSession(
            [item],
            git=self.git,
            agent=self.agent,
            base=base,
            isolated=isolated,
            worktree_root=Path(self.dispatch.worktree_root),
        )
        async with session:
            result = await session.execute(prompt)
            if result.outcome != Outcome.SUCCESS:
                return ItemOutcome(item.key, result.outcome, reason=result.reason)
            try:
                pr = await self.pipeline.integrate(session, result, auto_close=auto_close)
            except IntegrationConflictError as exc:
                session.keep_branch = True
                session.finish(EvaluationResult.failed(str(exc)))
                session.log.error("integration_conflict", branch=session.branch, error=str(exc))
                return ItemOutcome(item.key, Outcome.FAILED, reason=str(exc))
            except AutodevError as exc:
                session.finish(EvaluationResult.failed(str(exc)))
                session.log.error("integration_failed", error=str(exc))
                return ItemOutcome(item.key, Outcome.FAILED, reason=str(exc))
            return ItemOutcome(item.key, Outcome.SUCCESS, pr_url=pr.url)

    async def _reopen(self, item: WorkItem, reason: str, *, blocked: bool) -> None:
        prefix = (
            f"{COMMENT_PREFIX} Decision required: human intervention needed"
            if blocked
            else f"{COMMENT_PREFIX} Automatic implementation failed"
        )
        text = f"{prefix}\n\n{(reason or 'No reason given')[:REASON_MAX_CHARS]}"
        log = logger.bind(key=item.key)
        try:
            await self.tracker.comment(item.key, text)
        except AutodevError as exc:
            log.warning("failure_comment_failed", error=str(exc))
        try:
            await self.tracker.transition(item.key, self.project.transitions.reopen)
        except AutodevError as exc:
            log.warning("reopen_failed", error=str(exc))

    async def _close_already_done(self, item: WorkItem, reason: str) -> None:
        log = logger.bind(key=item.key)
        try:
            await self.tracker.comment(
                item.key,
                f"{COMMENT_PREFIX} Already implemented, no changes needed\n\n"
                f"{reason[:REASON_MAX_CHARS]}",
            )
            await self.tracker.transition(item.key, self.project.transitions.done)
        except AutodevError as exc:
            log.warning("already_done_close_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def run_next(
        self, *, parallel: int = 1, auto_close: bool = False, dry_run: bool = False
    ) -> RunSummary:
        parallel = max(1, min(parallel, self.dispatch.max_parallel))
        if parallel > 1 and (dry_run or not auto_close):
            logger.warning("parallel_needs_auto_close", parallel=parallel)
            parallel = 1
        if parallel > 1:
            summary = await self._run_parallel(parallel)
        else:
            summary = await self._run_sequential(auto_close=auto_close, dry_run=dry_run)
        logger.info(
            "run_finished", succeeded=len(summary.succeeded), failed=len(summary.failed)
        )
        return summary

    async def _run_sequential(self, *, auto_close: bool, dry_run: bool) -> RunSummary:
        summary = RunSummary()
        consecutive = 0
        while True:
            keys = await self.next_keys(1)
            if not keys:
                logger.info("no_eligible_items", project=self.project.key)
                break
            outcome = await self.process_item(keys[0], dry_run=dry_run, auto_close=auto_close)
            summary.record(outcome)
            if dry_run:
                break

            if outcome.ok:
                consecutive = 0
                if not auto_close:
                    break
                await self._after_success(outcome)
                await self._cooldown()
                continue

            consecutive += 1
            self.blocked_keys.add(outcome.key)
            if not auto_close and consecutive >= self.dispatch.max_next_attempts:
                logger.warning("max_attempts_reached", attempts=consecutive)
                break
            if auto_close and consecutive >= self.dispatch.max_consecutive_failures:
                logger.warning("too_many_consecutive_failures", failures=consecutive)
                break
        return summary

    async def _run_parallel(self, parallel: int) -> RunSummary:
        summary = RunSummary()
        while True:
            keys = await self.next_keys(parallel)
            if not keys:
                logger.info("no_eligible_items", project=self.project.key)
                break
            logger.info("batch_started", keys=keys)
            results = await asyncio.gather(
                *(self.process_item(k, auto_close=True, isolated=True) for k in keys),
                return_exceptions=True,
            )

            ok = failed = 0
            for key, result in zip(keys, results, strict=True):
                if isinstance(result, Exception):
                    logger.error("item_crashed", key=key, error=str(result))
                    result = ItemOutcome(key, Outcome.FAILED, reason=str(result))
                elif isinstance(result, BaseException):
                    raise result
                summary.record(result)
                if result.ok:
                    ok += 1
                else:
                    failed += 1
                    self.blocked_keys.add(key)
            logger.info(
                "batch_finished",
                ok=ok,
                failed=failed,
                total_ok=len(summary.succeeded),
                total_failed=len(summary.failed),
            )
            if failed and not ok:
                logger.warning("batch_failed_entirely")
                break
            await self._cooldown()
        return summary

    async def _after_success(self, outcome: ItemOutcome) -> None:
        if self.sprints is None or not outcome.sprint_name:
            return
        try:
            if await self.sprints.is_complete(outcome.sprint_name):
                async with self.pipeline.lock.ticket("recap"):
                    await self.sprints.write_recap(outcome.sprint_name)
        except (AutodevError, OSError) as exc:
            logger.warning("sprint_recap_failed", sprint=outcome.sprint_name, error=str(exc))

    async def _cooldown(self) -> None:
        seconds = self.dispatch.cooldown_seconds
        if seconds > 0:
            logger.info("cooldown", seconds=seconds)
            await self._sleep(seconds)
