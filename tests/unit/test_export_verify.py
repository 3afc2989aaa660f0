"""Unit tests for done-task export and post-sprint verification."""

from __future__ import annotations

from pathlib import Path

import pytest

from autodev.core.exceptions import AgentError
from autodev.core.export import (
    done_jql,
    export_done_tasks,
    pr_reference,
    render_done_tasks,
)
from autodev.core.models import Comment, ItemStatus
from autodev.core.verify import (
    Severity,
    VerifyProblem,
    create_problem_tickets,
    move_to_acceptance_sprint,
    parse_verify_report,
    run_verify,
)
from conftest import FakeAgent, FakeTracker

REPORT = """# Verification report: HIVE

## Summary
- OK: 3 tickets
- Problems: 2 tickets

## Problems

### [CRITICAL] Login form never submits
- **Tickets**: HIVE-1, HIVE-2
- **Problem**: The submit handler is not wired.
- **Suggestion**: Bind the handler in LoginForm.
- **Action**: TICKET_NEEDED

### [WARNING] Unused helper
- **Tickets**: HIVE-3
- **Problem**: utils.slug is dead code.
- **Suggestion**: Remove it.
- **Action**: MANUAL_CHECK

## Verified tickets
- **Tickets**: HIVE-9
"""


def _done(item, key: str, **kw):
    return item(key, status=ItemStatus.DONE, **kw)


class TestExport:
    def test_done_jql_excludes_epics(self, project) -> None:
        jql = done_jql(project, "Sprint 2")
        assert 'status = "Done"' in jql
        assert 'issuetype != "Epic"' in jql
        assert 'sprint = "Sprint 2"' in jql

    def test_pr_reference_from_autodev_comment(self, item) -> None:
        a = item(
            "HIVE-1",
            comments=[
                Comment("Ana", "Looks good"),
                Comment(
                    "bot",
                    "[autodev] PR created: https://github.com/acme/hive/pull/4\n\n"
                    "Modified files: 3",
                ),
            ],
        )
        assert pr_reference(a) == "https://github.com/acme/hive/pull/4 (3 files)"
        assert pr_reference(item("HIVE-2")) is None

    def test_render_groups_by_sprint(self, item) -> None:
        items = [
            _done(item, "HIVE-1", sprint="Sprint 1", description="x" * 600),
            _done(item, "HIVE-2", blocked_by={"HIVE-1": ItemStatus.DONE}),
        ]
        text = render_done_tasks("HIVE", items, today="2026-05-01")
        assert "> 2 tickets across 2 sprint(s)" in text
        assert "## Sprint 1" in text and "## No sprint" in text
        assert "- **Dependencies**: blocked_by HIVE-1 (done)" in text
        assert "x" * 600 not in text

    @pytest.mark.asyncio
    async def test_export_writes_file(self, item, project) -> None:
        tracker = FakeTracker([_done(item, "HIVE-1"), _done(item, "HIVE-2")])
        tracker.fail_fetch.add("HIVE-2")
        path = await export_done_tasks(tracker, project)
        assert path == project.context_dir / "done-tasks.md"
        text = path.read_text(encoding="utf-8")
        assert "### HIVE-1" in text
        assert "HIVE-2" not in text

    @pytest.mark.asyncio
    async def test_nothing_done(self, project) -> None:
        assert await export_done_tasks(FakeTracker(), project) is None
        assert not project.context_dir.exists()


class TestParseVerifyReport:
    def test_problem_blocks(self) -> None:
        problems = parse_verify_report(REPORT)
        assert [(p.severity, p.title) for p in problems] == [
            (Severity.CRITICAL, "Login form never submits"),
            (Severity.WARNING, "Unused helper"),
        ]
        critical = problems[0]
        assert critical.tickets == ["HIVE-1", "HIVE-2"]
        assert critical.needs_ticket and critical.issue_type == "Bug"
        assert not problems[1].needs_ticket
        assert problems[1].tickets == ["HIVE-3"]

    def test_description(self) -> None:
        p = VerifyProblem(Severity.WARNING, "t", problem="p", suggestion="s")
        text = p.description()
        assert text.startswith("Detected by autodev verify")
        assert "Related tickets: none" in text
        assert p.issue_type == "Task"

    def test_empty_report(self) -> None:
        assert parse_verify_report("# Verification report\n\nAll good.\n") == []


class TestVerifyTickets:
    @pytest.mark.asyncio
    async def test_only_ticket_needed_problems_created(self, project) -> None:
        tracker = FakeTracker()
        keys = await create_problem_tickets(tracker, project, parse_verify_report(REPORT))
        assert keys == ["HIVE-900"]
        created = tracker.created[0]
        assert created["summary"] == "[Verify] Login form never submits"
        assert created["type"] == "Bug"

    @pytest.mark.asyncio
    async def test_acceptance_sprint_created_and_started(self, project) -> None:
        tracker = FakeTracker()
        name = await move_to_acceptance_sprint(tracker, project, ["HIVE-900"])
        assert name == "Autodev Acceptance"
        (sprint,) = tracker.sprints.values()
        assert tracker.started == [sprint.id]
        assert tracker.sprint_members[sprint.id] == ["HIVE-900"]

    @pytest.mark.asyncio
    async def test_existing_active_sprint_reused(self, project) -> None:
        tracker = FakeTracker()
        sprint = tracker.add_sprint("Autodev Acceptance", "active")
        await move_to_acceptance_sprint(tracker, project, ["HIVE-900"])
        assert tracker.started == []
        assert tracker.sprint_members[sprint.id] == ["HIVE-900"]

    @pytest.mark.asyncio
    async def test_no_keys_no_sprint(self, project) -> None:
        tracker = FakeTracker()
        assert await move_to_acceptance_sprint(tracker, project, []) is None
        assert tracker.sprints == {}


class TestRunVerify:
    @pytest.mark.asyncio
    async def test_full_run(self, item, project) -> None:
        (project.repo_path / "PLAN.md").write_text("The plan", encoding="utf-8")
        project.plan_file = "PLAN.md"
        tracker = FakeTracker([_done(item, "HIVE-1")])

        def write_report(cwd: Path, prompt: str) -> None:
            (cwd / "autodev" / "verify-report.md").write_text(REPORT, encoding="utf-8")

        agent = FakeAgent(write_report)
        result = await run_verify(tracker, agent, project)

        assert result is not None
        assert (result.critical, result.warnings) == (1, 1)
        assert result.created == ["HIVE-900"]
        assert result.sprint_name == "Autodev Acceptance"
        assert "The plan" in agent.prompts[0]
        assert "### HIVE-1" in agent.prompts[0]

    @pytest.mark.asyncio
    async def test_stale_report_not_reused(self, item, project) -> None:
        project.context_dir.mkdir(parents=True)
        (project.context_dir / "verify-report.md").write_text(REPORT, encoding="utf-8")
        tracker = FakeTracker([_done(item, "HIVE-1")])
        with pytest.raises(AgentError, match="did not write"):
            await run_verify(tracker, FakeAgent(), project)
        assert tracker.created == []

    @pytest.mark.asyncio
    async def test_nothing_done_skips_agent(self, project) -> None:
        agent = FakeAgent()
        assert await run_verify(FakeTracker(), agent, project) is None
        assert agent.prompts == []
