"""Unit tests for autodev.core.integration: PR creation, merge and ticket closing."""

from __future__ import annotations

from typing import Any

import pytest

from autodev.core.exceptions import IntegrationConflictError, PullRequestError
from autodev.core.integration import IntegrationPipeline, build_item_draft
from autodev.core.merge import MergeLock
from autodev.core.models import EvaluationResult
from autodev.core.session import ExecutionSession
from conftest import FakeAgent, FakeGit, FakeHosting, FakeTracker

RESULT = EvaluationResult.success(["src/a.py", "src/b.py"], summary="done")


def _pipeline(tracker: FakeTracker, hosting: Any, **overrides: Any) -> IntegrationPipeline:
    kwargs: dict[str, Any] = {
        "tracker": tracker,
        "hosting": hosting,
        "lock": MergeLock("hive"),
        "done_transition": "Done",
        "merge_retries": 2,
    }
    kwargs.update(overrides)
    return IntegrationPipeline(**kwargs)


class _Reporter:
    def __init__(self, url: str | None) -> None:
        self.url = url
        self.calls: list[str] = []

    async def publish(self, item, result, pr_url: str) -> str | None:
        self.calls.append(pr_url)
        return self.url


class TestDraft:
    def test_item_draft(self, item) -> None:
        draft = build_item_draft(
            item("HIVE-4", "Add search"), RESULT, ["abc feat(HIVE-4): add"], "https://x/HIVE-4"
        )
        assert draft.title == "HIVE-4: Add search"
        assert "- `src/a.py`" in draft.body
        assert "abc feat(HIVE-4): add" in draft.body
        assert draft.close_keys == ["HIVE-4"]
        assert draft.labels == ["autodev"]


class TestIntegrate:
    @pytest.mark.asyncio
    async def test_without_auto_close_comments_pr(self, item, git: FakeGit) -> None:
        tracker, hosting = FakeTracker(), FakeHosting()
        session = ExecutionSession([item("HIVE-4", "Add search")], git=git, agent=FakeAgent())

        pr = await _pipeline(tracker, hosting).integrate(session, RESULT, auto_close=False)

        assert ("push", (session.branch, False)) in git.state.calls
        assert hosting.created[0].base == "main"
        assert hosting.labels[pr.number] == ["autodev"]
        assert hosting.merged == []
        assert tracker.transitions == []
        key, text = tracker.comments[0]
        assert key == "HIVE-4"
        assert text.startswith("[autodev] PR created: " + pr.url)
        assert "Modified files: 2" in text

    @pytest.mark.asyncio
    async def test_auto_close_merges_and_closes(self, item, git: FakeGit) -> None:
        tracker, hosting = FakeTracker(), FakeHosting()
        session = ExecutionSession([item("HIVE-4")], git=git, agent=FakeAgent())

        pr = await _pipeline(tracker, hosting).integrate(session, RESULT, auto_close=True)

        assert hosting.merged == [(pr.number, "squash", True)]
        assert tracker.transitions == [("HIVE-4", "Done")]
        assert "PR merged and ticket closed" in tracker.comments[0][1]
        # local base fast-forwarded after the merge
        assert git.state.calls[-2:] == [("checkout", ("main",)), ("pull", ("main", False))]

    @pytest.mark.asyncio
    async def test_sprint_base_targets_sprint_branch(self, item, git: FakeGit) -> None:
        hosting = FakeHosting()
        session = ExecutionSession(
            [item("HIVE-4")], git=git, agent=FakeAgent(), base="sprint/sprint-3"
        )
        await _pipeline(FakeTracker(), hosting).integrate(session, RESULT, auto_close=False)
        assert hosting.created[0].base == "sprint/sprint-3"

    @pytest.mark.asyncio
    async def test_conflict_propagates_without_closing(self, item, git: FakeGit) -> None:
        tracker, hosting = FakeTracker(), FakeHosting(merge_failures=5)
        session = ExecutionSession([item("HIVE-4")], git=git, agent=FakeAgent())
        pipeline = _pipeline(tracker, hosting)

        with pytest.raises(IntegrationConflictError):
            await pipeline.integrate(session, RESULT, auto_close=True)
        assert tracker.transitions == []
        assert not pipeline.lock.busy

    @pytest.mark.asyncio
    async def test_close_transition_failure_is_only_logged(self, item, git: FakeGit) -> None:
        tracker = FakeTracker()
        tracker.fail_transition.add("HIVE-4")
        session = ExecutionSession([item("HIVE-4")], git=git, agent=FakeAgent())

        pr = await _pipeline(tracker, FakeHosting()).integrate(session, RESULT, auto_close=True)
        assert pr.number == 101
        assert len(tracker.comments) == 1

    @pytest.mark.asyncio
    async def test_label_failure_is_only_logged(self, item, git: FakeGit) -> None:
        class NoLabels(FakeHosting):
            async def add_labels(self, pr_number: int, labels: list[str]) -> None:
                raise PullRequestError("labels disabled", status_code=403)

        session = ExecutionSession([item("HIVE-4")], git=git, agent=FakeAgent())
        pr = await _pipeline(FakeTracker(), NoLabels()).integrate(
            session, RESULT, auto_close=False
        )
        assert pr.url

    @pytest.mark.asyncio
    async def test_report_link_commented(self, item, git: FakeGit) -> None:
        tracker = FakeTracker()
        reporter = _Reporter("https://acme.atlassian.net/wiki/x/1")
        session = ExecutionSession([item("HIVE-4")], git=git, agent=FakeAgent())

        await _pipeline(tracker, FakeHosting(), reporter=reporter).integrate(
            session, RESULT, auto_close=False
        )
        assert len(reporter.calls) == 1
        assert tracker.comments[-1] == (
            "HIVE-4",
            "[autodev] Confluence report: https://acme.atlassian.net/wiki/x/1",
        )

    @pytest.mark.asyncio
    async def test_no_report_for_batches(self, item, git: FakeGit) -> None:
        reporter = _Reporter("https://x")
        session = ExecutionSession(
            [item("HIVE-4"), item("HIVE-5")], git=git, agent=FakeAgent(), group_name="g"
        )
        pipeline = _pipeline(FakeTracker(), FakeHosting(), reporter=reporter)
        draft = await pipeline.draft_for(session, RESULT)
        await pipeline.integrate(session, RESULT, auto_close=False, draft=draft)
        assert reporter.calls == []
