"""Unit tests for the MCP tool handlers in autodev.mcp_server."""

from __future__ import annotations

import json

import pytest

from autodev.core.config import AutodevConfig
from autodev.core.exceptions import ConfigError
from autodev.core.models import ItemStatus
from autodev.mcp_server import TOOLS, AutodevMCPServer, _text
from conftest import FakeTracker


@pytest.fixture
def config(tmp_path) -> AutodevConfig:
    return AutodevConfig.model_validate(
        {
            "jira": {
                "base_url": "https://acme.atlassian.net",
                "email": "bot@acme.test",
                "api_token": "secret",
            },
            "projects": {
                "HIVE": {"repo_path": str(tmp_path / "hive"), "gh_repo": "acme/hive"},
                "OPS": {"repo_path": str(tmp_path / "ops"), "gh_repo": "acme/ops"},
            },
        }
    )


def _server(config: AutodevConfig, tracker: FakeTracker) -> AutodevMCPServer:
    return AutodevMCPServer(config, tracker)


class TestToolCatalogue:
    def test_tool_names(self) -> None:
        assert [t.name for t in TOOLS] == [
            "list_projects",
            "fetch_ticket",
            "get_next_ticket",
            "search_tickets",
            "transition_ticket",
            "comment_ticket",
        ]

    def test_text_content_serialises_json(self) -> None:
        (content,) = _text({"key": "HIVE-1"})
        assert content.type == "text"
        assert json.loads(content.text) == {"key": "HIVE-1"}
        assert _text("plain")[0].text == "plain"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_list_projects_sorted(self, config) -> None:
        projects = await _server(config, FakeTracker()).dispatch("list_projects", {})
        assert [p["key"] for p in projects] == ["HIVE", "OPS"]
        assert projects[0]["gh_repo"] == "acme/hive"
        assert projects[0]["trunk"] == "main"

    @pytest.mark.asyncio
    async def test_fetch_ticket(self, config, item) -> None:
        tracker = FakeTracker([item("HIVE-1", "Login", blocked_by={"HIVE-0": ItemStatus.DONE})])
        payload = await _server(config, tracker).dispatch("fetch_ticket", {"ticket_key": "HIVE-1"})
        assert payload["summary"] == "Login"
        assert payload["links"][0]["key"] == "HIVE-0"

    @pytest.mark.asyncio
    async def test_next_ticket_skips_blocked(self, config, item) -> None:
        tracker = FakeTracker(
            [
                item("HIVE-1", age=3, blocked_by={"HIVE-9": ItemStatus.OPEN}),
                item("HIVE-2", age=2),
                item("HIVE-3", age=1),
            ]
        )
        payload = await _server(config, tracker).dispatch("get_next_ticket", {"project": "hive"})
        assert payload["key"] == "HIVE-2"
        assert 'status = "To Do"' in tracker.queries[0]

    @pytest.mark.asyncio
    async def test_next_ticket_none_eligible(self, config) -> None:
        server = _server(config, FakeTracker())
        result = await server.dispatch("get_next_ticket", {"project": "OPS"})
        assert result == "No eligible ticket found."

    @pytest.mark.asyncio
    async def test_search_defaults_to_todo_column(self, config, item) -> None:
        tracker = FakeTracker([item("HIVE-1", description="  " + "d" * 700), item("HIVE-2")])
        rows = await _server(config, tracker).dispatch(
            "search_tickets", {"project": "HIVE", "max_results": 1}
        )
        assert [r["key"] for r in rows] == ["HIVE-1"]
        assert len(rows[0]["description"]) == 500
        assert tracker.queries[0].startswith("project = HIVE")

    @pytest.mark.asyncio
    async def test_search_with_custom_jql(self, config) -> None:
        tracker = FakeTracker()
        await _server(config, tracker).dispatch(
            "search_tickets", {"project": "HIVE", "jql": "labels = api"}
        )
        assert tracker.queries == ["labels = api"]

    @pytest.mark.asyncio
    async def test_transition_and_comment(self, config, item) -> None:
        tracker = FakeTracker([item("HIVE-1")])
        server = _server(config, tracker)

        moved = await server.dispatch(
            "transition_ticket", {"ticket_key": "HIVE-1", "status": "Done"}
        )
        added = await server.dispatch(
            "comment_ticket", {"ticket_key": "HIVE-1", "comment": "Shipped"}
        )

        assert moved == 'Ticket HIVE-1 transitioned to "Done".'
        assert added == "Comment added to HIVE-1."
        assert tracker.transitions == [("HIVE-1", "Done")]
        assert tracker.comments == [("HIVE-1", "Shipped")]

    @pytest.mark.asyncio
    async def test_unknown_project(self, config) -> None:
        with pytest.raises(ConfigError, match="Unknown project 'NOPE'"):
            await _server(config, FakeTracker()).dispatch("get_next_ticket", {"project": "nope"})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, config) -> None:
        with pytest.raises(ValueError, match="Unknown tool"):
            await _server(config, FakeTracker()).dispatch("delete_everything", {})
