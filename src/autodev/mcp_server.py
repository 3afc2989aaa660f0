"""
MCP server exposing tracker operations to an automation client.

Runs over stdio (``autodev mcp``), so nothing else may write to stdout
while it is up; logging goes to stderr.

Tools:
  list_projects      configured projects
  fetch_ticket       full ticket details
  get_next_ticket    first eligible ticket of a project's todo column
  search_tickets     JQL search (defaults to the todo column)
  transition_ticket  move a ticket through its workflow
  comment_ticket     add a comment
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import structlog
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from autodev import __version__
from autodev.clients.tracker import JiraClient, todo_jql
from autodev.core.config import AutodevConfig
from autodev.core.constants import SUMMARY_MAX_CHARS
from autodev.core.models import WorkItem
from autodev.core.resolver import select_eligible

logger = structlog.get_logger()

_KEY = {"type": "string", "description": "Ticket key, e.g. HIVE-42"}
_PROJECT = {"type": "string", "description": "Project key, e.g. HIVE"}


def ticket_payload(item: WorkItem) -> dict[str, Any]:
    return asdict(item)


def _text(value: Any) -> list[TextContent]:
    text = value if isinstance(value, str) else json.dumps(value, default=str, indent=2)
    return [TextContent(type="text", text=text)]


class AutodevMCPServer:
    """Tool handlers backed by a single tracker connection."""

    def __init__(self, config: AutodevConfig, tracker: JiraClient) -> None:
        self.config = config
        self.tracker = tracker
        self.server = Server("autodev", version=__version__)
        self._setup_tools(self.server)

    def _setup_tools(self, server: Server) -> None:
        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return TOOLS

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            logger.debug("mcp_tool_call", tool=name)
            return _text(await self.dispatch(name, arguments or {}))

    async def dispatch(self, name: str, args: dict[str, Any]) -> Any:
        if name == "list_projects":
            return self.list_projects()
        if name == "fetch_ticket":
            return ticket_payload(await self.tracker.fetch_item(args["ticket_key"]))
        if name == "get_next_ticket":
            return await self.get_next_ticket(args["project"])
        if name == "search_tickets":
            return await self.search_tickets(
                args["project"], args.get("jql") or None, int(args.get("max_results") or 20)
            )
        if name == "transition_ticket":
            await self.tracker.transition(args["ticket_key"], args["status"])
            return f'Ticket {args["ticket_key"]} transitioned to "{args["status"]}".'
        if name == "comment_ticket":
            await self.tracker.comment(args["ticket_key"], args["comment"])
            return f"Comment added to {args['ticket_key']}."
        raise ValueError(f"Unknown tool: {name}")

    def list_projects(self) -> list[dict[str, Any]]:
        return [
            {
                "key": key,
                "repo_path": str(p.repo_path),
                "gh_repo": p.gh_repo,
                "trunk": p.trunk,
                "sprint_branches": p.sprint_branches,
            }
            for key, p in sorted(self.config.projects.items())
        ]

    async def get_next_ticket(self, project_key: str) -> dict[str, Any] | str:
        project = self.config.project(project_key.upper())
        candidates = await self.tracker.search_items(todo_jql(project), 50)
        keys = select_eligible(candidates, limit=1)
        if not keys:
            return "No eligible ticket found."
        return ticket_payload(await self.tracker.fetch_item(keys[0]))

    async def search_tickets(
        self, project_key: str, jql: str | None, max_results: int = 20
    ) -> list[dict[str, Any]]:
        project = self.config.project(project_key.upper())
        items = await self.tracker.search_items(jql or todo_jql(project), max_results)
        return [
            {
                "key": i.key,
                "summary": i.summary,
                "status": i.status,
                "priority": i.priority,
                "type": i.issue_type,
                "description": i.description.strip()[:SUMMARY_MAX_CHARS],
            }
            for i in items
        ]

    async def run_stdio(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            logger.info("mcp_server_started", transport="stdio")
            await self.server.run(
                read_stream, write_stream, self.server.create_initialization_options()
            )


TOOLS = [
    Tool(
        name="list_projects",
        description="List all configured autodev projects",
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name="fetch_ticket",
        description="Fetch full details of a ticket (summary, description, links, comments)",
        inputSchema={
            "type": "object",
            "properties": {"ticket_key": _KEY},
            "required": ["ticket_key"],
        },
    ),
    Tool(
        name="get_next_ticket",
        description="Find the next unblocked ticket in a project's todo column",
        inputSchema={
            "type": "object",
            "properties": {"project": _PROJECT},
            "required": ["project"],
        },
    ),
    Tool(
        name="search_tickets",
        description=(
            "Search tickets with JQL. Without jql, returns the project's todo tickets."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "project": _PROJECT,
                "jql": {"type": "string", "description": "Custom JQL query"},
                "max_results": {
                    "type": "integer",
                    "description": "Max results to return (default 20)",
                    "default": 20,
                },
            },
            "required": ["project"],
        },
    ),
    Tool(
        name="transition_ticket",
        description="Move a ticket to another status by transition name",
        inputSchema={
            "type": "object",
            "properties": {
                "ticket_key": _KEY,
                "status": {"type": "string", "description": "Transition name, e.g. 'Done'"},
            },
            "required": ["ticket_key", "status"],
        },
    ),
    Tool(
        name="comment_ticket",
        description="Add a comment to a ticket",
        inputSchema={
            "type": "object",
            "properties": {
                "ticket_key": _KEY,
                "comment": {"type": "string", "description": "Comment text to add"},
            },
            "required": ["ticket_key", "comment"],
        },
    ),
]


async def serve(config: AutodevConfig) -> None:
    async with JiraClient.from_config(config) as tracker:
        await AutodevMCPServer(config, tracker).run_stdio()
