"""Unit tests for autodev.core.batch: grouping, choice and per-ticket attribution."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from autodev.core.batch import (
    BatchGrouper,
    TicketGroup,
    evaluate_batch_result,
    extract_json_array,
    normalize_groups,
    parse_groups,
    resolve_choice,
)
from autodev.core.exceptions import GroupingError
from autodev.core.integration import IntegrationPipeline
from autodev.core.merge import MergeLock
from autodev.core.models import ItemStatus
from conftest import FakeAgent, FakeGit, FakeHosting, FakeTracker

GROUPS = [
    TicketGroup(name="Search", reason="same module", tickets=["HIVE-1", "HIVE-2"]),
    TicketGroup(name="Docs", tickets=["HIVE-3"]),
]


class TestExtractJsonArray:
    def test_array_inside_prose_and_fence(self) -> None:
        text = 'Here you go:\n```json\n[{"name": "a", "tickets": ["HIVE-1"]}]\n```\nDone.'
        assert extract_json_array(text) == [{"name": "a", "tickets": ["HIVE-1"]}]

    def test_bracket_in_prose_skipped(self) -> None:
        text = 'Tickets [see below] grouped: [{"name": "a"}]'
        assert extract_json_array(text) == [{"name": "a"}]

    def test_no_array_raises(self) -> None:
        with pytest.raises(GroupingError, match="did not return a JSON array"):
            extract_json_array("I could not group these tickets.")

    def test_invalid_group_shape(self) -> None:
        with pytest.raises(GroupingError, match="Invalid group list"):
            parse_groups('[{"reason": "no name"}]')


class TestNormalizeGroups:
    def test_unknown_and_repeated_keys_dropped(self, item) -> None:
        known = {k: item(k) for k in ("HIVE-1", "HIVE-2")}
        groups = [
            TicketGroup(name="a", tickets=["hive-1", "HIVE-9"]),
            TicketGroup(name="b", tickets=["HIVE-1", "HIVE-2"]),
            TicketGroup(name="c", tickets=["HIVE-9"]),
        ]
        cleaned = normalize_groups(groups, known)
        assert [(g.name, g.tickets) for g in cleaned] == [("a", ["HIVE-1"]), ("b", ["HIVE-2"])]


class TestResolveChoice:
    def test_number_selects_one_group(self) -> None:
        assert resolve_choice("2", GROUPS) == [GROUPS[1]]

    def test_all(self) -> None:
        assert resolve_choice(" ALL ", GROUPS) == GROUPS

    def test_cancel_and_empty(self) -> None:
        assert resolve_choice("cancel", GROUPS) == []
        assert resolve_choice("", GROUPS) == []

    @pytest.mark.parametrize("answer", ["0", "3", "first"])
    def test_invalid_answers(self, answer: str) -> None:
        with pytest.raises(GroupingError, match="Invalid choice"):
            resolve_choice(answer, GROUPS)


class TestEvaluateBatchResult:
    def test_three_of_five_committed(self) -> None:
        keys = [f"HIVE-{n}" for n in range(1, 6)]
        log = [
            "a01 feat(HIVE-5): five",
            "a02 feat(HIVE-3): three",
            "a03 feat(HIVE-1): one",
        ]
        evaluation = evaluate_batch_result(keys, log)
        assert evaluation.succeeded == ["HIVE-1", "HIVE-3", "HIVE-5"]
        assert evaluation.failed == ["HIVE-2", "HIVE-4"]
        assert evaluation.success

    def test_no_commits_is_a_failure(self) -> None:
        evaluation = evaluate_batch_result(["HIVE-1"], ["a01 chore: tidy"])
        assert not evaluation.success
        assert evaluation.failed == ["HIVE-1"]


def _grouper(project, tracker, git, agent, hosting=None) -> BatchGrouper:
    pipeline = IntegrationPipeline(
        tracker=tracker,
        hosting=hosting or FakeHosting(),
        lock=MergeLock("hive"),
        done_transition="Done",
        merge_retries=2,
    )
    return BatchGrouper(project=project, tracker=tracker, git=git, agent=agent, pipeline=pipeline)


def _committing(git: FakeGit, keys: list[str]):
    def on_run(cwd: Path, prompt: str) -> None:
        git.state.log_lines = [f"c{n:02d} feat({k}): implement" for n, k in enumerate(keys)]
        git.state.diff = ["src/app.py"]

    return on_run


class TestBatchGrouper:
    @pytest.mark.asyncio
    async def test_collect_skips_ineligible(self, item, project, git) -> None:
        tracker = FakeTracker(
            [
                item("HIVE-1", age=3),
                item("HIVE-2", age=2, container=True),
                item("HIVE-3", age=1, blocked_by={"HIVE-9": ItemStatus.OPEN}),
            ]
        )
        items = await _grouper(project, tracker, git, FakeAgent()).collect()
        assert [i.key for i in items] == ["HIVE-1"]

    @pytest.mark.asyncio
    async def test_propose_uses_agent_answer(self, item, project, git) -> None:
        answer = "Proposed:\n" + json.dumps(
            [{"name": "Search", "reason": "shared code", "tickets": ["HIVE-1", "HIVE-7"]}]
        )
        agent = FakeAgent(answer=answer)
        groups = await _grouper(project, FakeTracker(), git, agent).propose([item("HIVE-1")])
        assert groups == [TicketGroup(name="Search", reason="shared code", tickets=["HIVE-1"])]
        assert "HIVE-1" in agent.asked[0]

    @pytest.mark.asyncio
    async def test_five_items_three_commits(self, item, project, git) -> None:
        items = [item(f"HIVE-{n}", f"Ticket {n}", age=10 - n) for n in range(1, 6)]
        tracker = FakeTracker(items)
        hosting = FakeHosting()
        agent = FakeAgent(_committing(git, ["HIVE-1", "HIVE-3", "HIVE-5"]))
        group = TicketGroup(name="Everything", tickets=[i.key for i in items])

        outcome = await _grouper(project, tracker, git, agent, hosting).execute_group(
            group, {i.key: i for i in items}
        )

        assert outcome.ok
        assert outcome.succeeded == ["HIVE-1", "HIVE-3", "HIVE-5"]
        assert outcome.failed == ["HIVE-2", "HIVE-4"]
        assert outcome.pr_url.endswith("/pull/101")
        pr = hosting.created[0]
        assert pr.title == "batch(HIVE): Everything"
        assert pr.head == "feat/HIVE-batch-everything"
        assert tracker.labels == {k: ["autodev-processed"] for k in ("HIVE-1", "HIVE-3", "HIVE-5")}
        reopened = [k for k, name in tracker.transitions if name == "To Do"]
        assert reopened == ["HIVE-2", "HIVE-4"]
        assert all("Manual intervention required" in text for _, text in tracker.comments[-2:])

    @pytest.mark.asyncio
    async def test_auto_close_closes_only_committed(self, item, project, git) -> None:
        items = [item("HIVE-1"), item("HIVE-2")]
        tracker = FakeTracker(items)
        hosting = FakeHosting()
        agent = FakeAgent(_committing(git, ["HIVE-2"]))
        group = TicketGroup(name="Pair", tickets=["HIVE-1", "HIVE-2"])

        await _grouper(project, tracker, git, agent, hosting).execute_group(
            group, {i.key: i for i in items}, auto_close=True
        )

        assert len(hosting.merged) == 1
        assert ("HIVE-2", "Done") in tracker.transitions
        assert ("HIVE-1", "Done") not in tracker.transitions
        assert tracker.items["HIVE-1"].status == ItemStatus.OPEN

    @pytest.mark.asyncio
    async def test_no_commit_fails_whole_group(self, item, project, git) -> None:
        items = [item("HIVE-1"), item("HIVE-2")]
        tracker = FakeTracker(items)
        hosting = FakeHosting()
        group = TicketGroup(name="Pair", tickets=["HIVE-1", "HIVE-2"])
        outcome = await _grouper(project, tracker, git, FakeAgent(), hosting).execute_group(
            group, {i.key: i for i in items}
        )
        assert not outcome.ok
        assert outcome.failed == ["HIVE-1", "HIVE-2"]
        assert hosting.created == []

    @pytest.mark.asyncio
    async def test_rejected_push_fails_group_and_drops_branch(self, item, project, git) -> None:
        items = [item("HIVE-1"), item("HIVE-2")]
        tracker = FakeTracker(items)
        hosting = FakeHosting()
        agent = FakeAgent(_committing(git, ["HIVE-1", "HIVE-2"]))
        group = TicketGroup(name="Pair", tickets=["HIVE-1", "HIVE-2"])
        git.state.fail["push"] = 1

        outcome = await _grouper(project, tracker, git, agent, hosting).execute_group(
            group, {i.key: i for i in items}
        )

        assert not outcome.ok
        assert outcome.failed == ["HIVE-1", "HIVE-2"]
        assert "git push failed" in outcome.reason
        assert hosting.created == []
        assert git.state.calls[-1] == ("delete_branch", ("feat/HIVE-batch-pair",))
        reopened = [k for k, name in tracker.transitions if name == "To Do"]
        assert reopened == ["HIVE-1", "HIVE-2"]

    @pytest.mark.asyncio
    async def test_run_cancelled_by_operator(self, item, project, git) -> None:
        tracker = FakeTracker([item("HIVE-1")])
        agent = FakeAgent(answer='[{"name": "Solo", "tickets": ["HIVE-1"]}]')
        seen = []

        def choose(groups, by_key) -> str:
            seen.append([g.name for g in groups])
            return "cancel"

        outcomes = await _grouper(project, tracker, git, agent).run(choose)
        assert outcomes == []
        assert seen == [["Solo"]]
        assert agent.prompts == []

    @pytest.mark.asyncio
    async def test_run_dry_run_returns_prompts(self, item, project, git) -> None:
        tracker = FakeTracker([item("HIVE-1", age=2), item("HIVE-2", age=1)])
        answer = json.dumps(
            [{"name": "One", "tickets": ["HIVE-1"]}, {"name": "Two", "tickets": ["HIVE-2"]}]
        )
        agent = FakeAgent(answer=answer)
        outcomes = await _grouper(project, tracker, git, agent).run(
            lambda groups, by_key: "all", dry_run=True
        )
        assert [o.name for o in outcomes] == ["One", "Two"]
        assert "Keys in this batch: HIVE-2." in outcomes[1].prompt
        assert tracker.transitions == []

    @pytest.mark.asyncio
    async def test_run_with_nothing_eligible(self, project, git) -> None:
        agent = FakeAgent()
        assert await _grouper(project, FakeTracker(), git, agent).run(lambda g, b: "all") == []
        assert agent.asked == []
