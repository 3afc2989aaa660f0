"""Unit tests for autodev.clients.tracker using httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from autodev.clients.throttle import RequestThrottle
from autodev.clients.tracker import (
    JiraClient,
    jql_quote,
    parse_issue,
    parse_links,
    parse_status,
    sprint_jql,
    todo_jql,
)
from autodev.core.config import ProjectConfig, StatusMap
from autodev.core.exceptions import TrackerError
from autodev.core.models import ItemStatus, LinkDirection

PROJECT = ProjectConfig(key="HIVE", repo_path="/tmp/hive", gh_repo="acme/hive")


def _issue(key: str, **fields: Any) -> dict[str, Any]:
    base: dict[str, Any] = {
        "summary": f"Ticket {key}",
        "status": {"id": "1", "name": "To Do", "statusCategory": {"key": "new"}},
        "issuetype": {"name": "Task"},
    }
    base.update(fields)
    return {"key": key, "fields": base}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> JiraClient:
    return JiraClient(
        "https://acme.atlassian.net/",
        "bot@acme.test",
        "secret",
        projects={"HIVE": PROJECT},
        throttle=RequestThrottle(0),
        transport=httpx.MockTransport(handler),
    )


class _Recorder:
    """Routes ``(METHOD, path)`` to canned JSON and keeps every request."""

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = self.routes.get((request.method, request.url.path))
        if callable(body):
            body = body(request)
        if body is None:
            return httpx.Response(204)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    def body(self, index: int) -> Any:
        return json.loads(self.requests[index].content)


class TestParsing:
    def test_status_category_fallback(self) -> None:
        assert parse_status({"statusCategory": {"key": "done"}}) == ItemStatus.DONE
        assert parse_status({"statusCategory": {"key": "indeterminate"}}) == ItemStatus.IN_PROGRESS
        assert parse_status(None) == ItemStatus.OPEN

    def test_configured_status_wins(self) -> None:
        statuses = StatusMap(done="10001", blocked="On Hold")
        assert parse_status({"id": "10001", "statusCategory": {"key": "new"}}, statuses) == (
            ItemStatus.DONE
        )
        assert parse_status({"name": "on hold"}, statuses) == ItemStatus.BLOCKED

    def test_blocking_links_in_both_directions(self) -> None:
        links = parse_links(
            [
                {
                    "type": {"name": "Blocks", "inward": "is blocked by"},
                    "outwardIssue": {
                        "key": "HIVE-2",
                        "fields": {"status": {"statusCategory": {"key": "done"}}},
                    },
                },
                {"type": {"name": "Blocks"}, "inwardIssue": {"key": "HIVE-3", "fields": {}}},
                {"type": {"name": "Relates"}, "inwardIssue": {"key": "HIVE-4"}},
            ]
        )
        assert [(link.direction, link.key, link.status) for link in links] == [
            (LinkDirection.BLOCKED_BY, "HIVE-2", ItemStatus.DONE),
            (LinkDirection.BLOCKS, "HIVE-3", ItemStatus.OPEN),
        ]

    def test_issue_snapshot(self) -> None:
        data = _issue(
            "HIVE-7",
            description={"type": "doc", "content": [{"type": "text", "text": "Body"}]},
            parent={"key": "HIVE-1", "fields": {"summary": "Epic"}},
            labels=["api"],
            created="2026-02-01T10:00:00.000+0000",
            customfield_10016=5,
            customfield_10020=[
                {"id": 3, "name": "Sprint 1", "state": "closed"},
                {"id": 4, "name": "Sprint 2", "state": "active"},
            ],
            comment={"comments": [{"author": {"displayName": "Ana"}, "body": "LGTM"}]},
        )
        item = parse_issue(data, PROJECT)
        assert item.description == "Body"
        assert (item.epic_key, item.epic_summary) == ("HIVE-1", "Epic")
        assert (item.sprint_id, item.sprint_name) == (4, "Sprint 2")
        assert item.story_points == 5.0
        assert item.created is not None and item.created.year == 2026
        assert item.comments[0].author == "Ana"
        assert not item.container

    def test_epic_is_a_container(self) -> None:
        item = parse_issue(_issue("HIVE-1", issuetype={"name": "Epic"}), PROJECT)
        assert item.container


class TestJql:
    def test_quote_escapes(self) -> None:
        assert jql_quote('Sprint "A"') == '"Sprint \\"A\\""'

    def test_todo_and_sprint_queries(self) -> None:
        assert todo_jql(PROJECT) == 'project = HIVE AND status = "To Do" ORDER BY created ASC'
        assert sprint_jql(PROJECT, "Sprint 2", open_only=True) == (
            'project = HIVE AND sprint = "Sprint 2" AND status != "Done" ORDER BY created ASC'
        )


class TestJiraClient:
    @pytest.mark.asyncio
    async def test_fetch_item_uses_basic_auth(self) -> None:
        rec = _Recorder({("GET", "/rest/api/3/issue/HIVE-7"): _issue("HIVE-7")})
        async with _client(rec) as jira:
            item = await jira.fetch_item("HIVE-7")
        assert item.key == "HIVE-7"
        request = rec.requests[0]
        assert request.headers["authorization"].startswith("Basic ")
        assert "customfield_10020" in request.url.params["fields"]

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        rec = _Recorder({("GET", "/rest/api/3/issue/HIVE-9"): httpx.Response(404, text="gone")})
        async with _client(rec) as jira:
            with pytest.raises(TrackerError) as info:
                await jira.fetch_item("HIVE-9")
        assert info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_search_keys_follows_pages(self) -> None:
        pages = iter(
            [
                {"issues": [{"key": "HIVE-1"}], "nextPageToken": "t2", "isLast": False},
                {"issues": [{"key": "HIVE-2"}], "isLast": True},
            ]
        )
        rec = _Recorder({("GET", "/rest/api/3/search/jql"): lambda r: next(pages)})
        async with _client(rec) as jira:
            assert await jira.count("project = HIVE") == 2
        assert rec.requests[1].url.params["nextPageToken"] == "t2"

    @pytest.mark.asyncio
    async def test_transition_by_target_status(self) -> None:
        rec = _Recorder(
            {
                ("GET", "/rest/api/3/issue/HIVE-1/transitions"): {
                    "transitions": [
                        {"id": "11", "name": "Start", "to": {"name": "In Progress"}},
                        {"id": "31", "name": "Close", "to": {"name": "Done"}},
                    ]
                },
                ("POST", "/rest/api/3/issue/HIVE-1/transitions"): None,
            }
        )
        async with _client(rec) as jira:
            await jira.transition("HIVE-1", "done")
        assert rec.body(1) == {"transition": {"id": "31"}}

    @pytest.mark.asyncio
    async def test_unknown_transition_lists_available(self) -> None:
        rec = _Recorder(
            {("GET", "/rest/api/3/issue/HIVE-1/transitions"): {"transitions": [{"id": "1"}]}}
        )
        async with _client(rec) as jira:
            with pytest.raises(TrackerError, match="not available"):
                await jira.transition("HIVE-1", "Done")

    @pytest.mark.asyncio
    async def test_comment_is_adf(self) -> None:
        rec = _Recorder({("POST", "/rest/api/3/issue/HIVE-1/comment"): {"id": "5"}})
        async with _client(rec) as jira:
            await jira.comment("HIVE-1", "[autodev] hello")
        assert rec.body(0)["body"]["type"] == "doc"

    @pytest.mark.asyncio
    async def test_create_item_and_link(self) -> None:
        rec = _Recorder(
            {
                ("POST", "/rest/api/3/issue"): {"key": "HIVE-50"},
                ("POST", "/rest/api/3/issueLink"): None,
            }
        )
        async with _client(rec) as jira:
            key = await jira.create_item("HIVE", "x" * 300, "Details", "Bug", ["verify"])
            await jira.create_link("HIVE-50", "HIVE-49")
        fields = rec.body(0)["fields"]
        assert key == "HIVE-50"
        assert len(fields["summary"]) == 255
        assert fields["issuetype"] == {"name": "Bug"}
        assert fields["labels"] == ["verify"]
        assert rec.body(1)["inwardIssue"] == {"key": "HIVE-50"}

    @pytest.mark.asyncio
    async def test_board_id_is_cached(self) -> None:
        rec = _Recorder({("GET", "/rest/agile/1.0/board"): {"values": [{"id": 12}]}})
        async with _client(rec) as jira:
            assert await jira.board_id("HIVE") == 12
            assert await jira.board_id("HIVE") == 12
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_board(self) -> None:
        rec = _Recorder({("GET", "/rest/agile/1.0/board"): {"values": []}})
        async with _client(rec) as jira:
            with pytest.raises(TrackerError, match="No agile board"):
                await jira.board_id("HIVE")

    @pytest.mark.asyncio
    async def test_find_sprint_pages_through_open_sprints(self) -> None:
        pages = iter(
            [
                {"values": [{"id": 1, "name": "Sprint 1", "state": "active"}], "isLast": False},
                {"values": [{"id": 2, "name": "Acceptance", "state": "future"}], "isLast": True},
            ]
        )
        rec = _Recorder({("GET", "/rest/agile/1.0/board/7/sprint"): lambda r: next(pages)})
        async with _client(rec) as jira:
            sprint = await jira.find_sprint(7, "Acceptance")
        assert sprint is not None and sprint.id == 2
        assert rec.requests[1].url.params["startAt"] == "1"

    @pytest.mark.asyncio
    async def test_move_to_sprint_chunks(self) -> None:
        rec = _Recorder({("POST", "/rest/agile/1.0/sprint/5/issue"): None})
        keys = [f"HIVE-{n}" for n in range(120)]
        async with _client(rec) as jira:
            await jira.move_to_sprint(5, keys)
        assert [len(rec.body(i)["issues"]) for i in range(3)] == [50, 50, 20]

    @pytest.mark.asyncio
    async def test_used_outside_context_manager(self) -> None:
        jira = _client(_Recorder({}))
        with pytest.raises(AssertionError):
            await jira.fetch_item("HIVE-1")

    def test_browse_url(self) -> None:
        assert _client(_Recorder({})).browse_url("HIVE-1") == (
            "https://acme.atlassian.net/browse/HIVE-1"
        )
