"""
Jira REST v3 / Agile 1.0 client.

Thin httpx-based wrapper around the calls autodev needs: fetching and
searching tickets, transitions, comments, ticket creation and linking,
and sprint management.  Responses are mapped onto :class:`WorkItem`
snapshots; nothing else in autodev sees raw Jira JSON.

Every request waits on the connection's :class:`RequestThrottle`, so
concurrent sessions sharing one client never exceed one request per
interval.  Authentication is Basic (account email + API token).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from autodev.clients.adf import adf_to_text, text_to_adf
from autodev.clients.throttle import RequestThrottle
from autodev.core.config import AutodevConfig, ProjectConfig, StatusMap
from autodev.core.constants import BLOCKS_LINK_TYPE, COMMENT_LIMIT, HTTP_TIMEOUT_SECONDS
from autodev.core.exceptions import TrackerError
from autodev.core.models import Comment, ItemStatus, Link, LinkDirection, WorkItem

logger = structlog.get_logger()

_BASE_FIELDS = [
    "summary",
    "description",
    "priority",
    "issuetype",
    "status",
    "parent",
    "issuelinks",
    "comment",
    "labels",
    "created",
    "updated",
    "statuscategorychangedate",
    "assignee",
    "sprint",
]
_MOVE_CHUNK = 50


@dataclass(frozen=True)
class Sprint:
    id: int
    name: str
    state: str = "future"
    start_date: str | None = None
    end_date: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Sprint:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            state=data.get("state", "future"),
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
        )


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _status_matches(configured: str | None, status: dict[str, Any]) -> bool:
    if not configured:
        return False
    return configured == str(status.get("id", "")) or (
        configured.lower() == (status.get("name") or "").lower()
    )


def parse_status(status: dict[str, Any] | None, statuses: StatusMap | None = None) -> ItemStatus:
    """Map a Jira status object onto an ItemStatus.

    Configured status ids/names win; the status category is the fallback.
    """
    status = status or {}
    if statuses is not None:
        if _status_matches(statuses.done, status):
            return ItemStatus.DONE
        if _status_matches(statuses.in_progress, status):
            return ItemStatus.IN_PROGRESS
        if _status_matches(statuses.blocked, status):
            return ItemStatus.BLOCKED
        if _status_matches(statuses.todo, status):
            return ItemStatus.OPEN
    category = (status.get("statusCategory") or {}).get("key", "")
    if category == "done":
        return ItemStatus.DONE
    if category == "indeterminate":
        return ItemStatus.IN_PROGRESS
    return ItemStatus.OPEN


def parse_links(
    issuelinks: list[dict[str, Any]] | None, statuses: StatusMap | None = None
) -> list[Link]:
    """Extract blocking links.

    ``inwardIssue`` present: this ticket blocks it.
    ``outwardIssue`` present: this ticket is blocked by it.
    """
    links: list[Link] = []
    for raw in issuelinks or []:
        link_type = raw.get("type") or {}
        is_blocking = link_type.get("name") == BLOCKS_LINK_TYPE
        if not is_blocking and link_type.get("inward") != "is blocked by":
            continue
        for side, direction in (
            ("inwardIssue", LinkDirection.BLOCKS),
            ("outwardIssue", LinkDirection.BLOCKED_BY),
        ):
            other = raw.get(side)
            if not other:
                continue
            fields = other.get("fields") or {}
            links.append(
                Link(
                    direction=direction,
                    key=other["key"],
                    status=parse_status(fields.get("status"), statuses),
                    summary=fields.get("summary", ""),
                )
            )
    return links


def _parse_sprint(fields: dict[str, Any], sprint_field: str) -> dict[str, Any] | None:
    value = fields.get("sprint") or fields.get(sprint_field)
    if isinstance(value, list):
        if not value:
            return None
        active = [s for s in value if isinstance(s, dict) and s.get("state") == "active"]
        return active[0] if active else value[-1]
    return value if isinstance(value, dict) else None


def parse_issue(data: dict[str, Any], project: ProjectConfig | None = None) -> WorkItem:
    """Build a WorkItem snapshot from a Jira issue payload."""
    fields = data.get("fields") or {}
    statuses = project.statuses if project else None
    epic_type = project.epic_type if project else "Epic"
    sprint_field = project.sprint_field if project else "customfield_10020"
    points_field = project.story_points_field if project else "customfield_10016"

    parent = fields.get("parent") or {}
    issue_type = (fields.get("issuetype") or {}).get("name", "Task")
    sprint = _parse_sprint(fields, sprint_field)

    raw_comments = (fields.get("comment") or {}).get("comments") or []
    comments = [
        Comment(
            author=(c.get("author") or {}).get("displayName", "unknown"),
            body=adf_to_text(c.get("body")).strip(),
            created=c.get("created", ""),
        )
        for c in raw_comments[-COMMENT_LIMIT:]
    ]

    points = fields.get(points_field)
    return WorkItem(
        key=data["key"],
        summary=fields.get("summary", ""),
        status=parse_status(fields.get("status"), statuses),
        issue_type=issue_type,
        priority=(fields.get("priority") or {}).get("name", "Medium"),
        description=adf_to_text(fields.get("description")).strip(),
        links=parse_links(fields.get("issuelinks"), statuses),
        comments=comments,
        labels=list(fields.get("labels") or []),
        epic_key=parent.get("key"),
        epic_summary=(parent.get("fields") or {}).get("summary", ""),
        sprint_id=int(sprint["id"]) if sprint and sprint.get("id") is not None else None,
        sprint_name=sprint.get("name") if sprint else None,
        created=_parse_time(fields.get("created")),
        updated=_parse_time(fields.get("updated")),
        status_changed=_parse_time(fields.get("statuscategorychangedate")),
        assignee=(fields.get("assignee") or {}).get("displayName", ""),
        story_points=float(points) if isinstance(points, (int, float)) else None,
        container=issue_type == epic_type,
    )


# ---------------------------------------------------------------------------
# JQL
# ---------------------------------------------------------------------------


def jql_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def todo_jql(project: ProjectConfig) -> str:
    """Open items of *project*, oldest first."""
    return (
        f"project = {project.key} AND status = {jql_quote(project.statuses.todo)} "
        "ORDER BY created ASC"
    )


def sprint_jql(project: ProjectConfig, sprint_name: str, *, open_only: bool = False) -> str:
    jql = f"project = {project.key} AND sprint = {jql_quote(sprint_name)}"
    if open_only:
        jql += f" AND status != {jql_quote(project.statuses.done)}"
    return jql + " ORDER BY created ASC"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class JiraClient:
    """
    Async Jira client.

    Parameters
    ----------
    base_url:
        Site root, e.g. ``https://acme.atlassian.net``.
    email / api_token:
        Basic-auth credentials.
    projects:
        Per-project settings used to map statuses, epics, and custom fields.
    throttle:
        Request throttle for this connection (one is created if omitted).
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        projects: Mapping[str, ProjectConfig] | None = None,
        throttle: RequestThrottle | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(email, api_token)
        self._projects = dict(projects or {})
        self._throttle = throttle or RequestThrottle()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._boards: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: AutodevConfig) -> JiraClient:
        return cls(
            config.jira.base_url,
            config.jira.email,
            config.jira.api_token.get_secret_value(),
            projects=config.projects,
            throttle=RequestThrottle(config.jira.throttle_seconds),
        )

    async def __aenter__(self) -> JiraClient:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=self._auth,
            headers={"Accept": "application/json"},
            timeout=HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def browse_url(self, key: str) -> str:
        return f"{self.base_url}/browse/{key}"

    def _project_for(self, key: str) -> ProjectConfig | None:
        return self._projects.get(key.rsplit("-", 1)[0])

    def _fields(self) -> str:
        extra: list[str] = []
        for project in self._projects.values():
            for name in (project.sprint_field, project.story_points_field):
                if name not in extra:
                    extra.append(name)
        return ",".join(_BASE_FIELDS + extra)

    def _parse(self, data: dict[str, Any]) -> WorkItem:
        return parse_issue(data, self._project_for(data["key"]))

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def fetch_item(self, key: str) -> WorkItem:
        data = await self._get(f"/rest/api/3/issue/{key}", params={"fields": self._fields()})
        item = self._parse(data)
        logger.debug("item_fetched", key=key, status=item.status, links=len(item.links))
        return item

    async def search_items(self, jql: str, max_results: int = 50) -> list[WorkItem]:
        data = await self._get(
            "/rest/api/3/search/jql",
            params={"jql": jql, "maxResults": max_results, "fields": self._fields()},
        )
        return [self._parse(issue) for issue in data.get("issues") or []]

    async def search_keys(self, jql: str, page_size: int = 100) -> list[str]:
        """Return every matching key, following ``nextPageToken`` pagination."""
        keys: list[str] = []
        token: str | None = None
        while True:
            params: dict[str, Any] = {"jql": jql, "maxResults": page_size, "fields": "key"}
            if token:
                params["nextPageToken"] = token
            data = await self._get("/rest/api/3/search/jql", params=params)
            issues = data.get("issues") or []
            keys.extend(issue["key"] for issue in issues)
            token = data.get("nextPageToken")
            if data.get("isLast", True) or not token or not issues:
                break
        return keys

    async def count(self, jql: str) -> int:
        return len(await self.search_keys(jql))

    async def transition(self, key: str, name: str) -> None:
        """Apply the transition whose name (or target status name) equals *name*."""
        data = await self._get(f"/rest/api/3/issue/{key}/transitions")
        transitions = data.get("transitions") or []
        wanted = name.lower()
        for t in transitions:
            target = ((t.get("to") or {}).get("name") or "").lower()
            if (t.get("name") or "").lower() == wanted or target == wanted:
                await self._post(
                    f"/rest/api/3/issue/{key}/transitions", json={"transition": {"id": t["id"]}}
                )
                logger.info("item_transitioned", key=key, transition=t.get("name"))
                return
        available = ", ".join(t.get("name", "?") for t in transitions) or "none"
        raise TrackerError(f"Transition {name!r} not available for {key} (available: {available})")

    async def comment(self, key: str, text: str) -> None:
        await self._post(f"/rest/api/3/issue/{key}/comment", json={"body": text_to_adf(text)})
        logger.debug("item_commented", key=key, chars=len(text))

    async def create_item(
        self,
        project_key: str,
        summary: str,
        description: str = "",
        issue_type: str = "Task",
        labels: list[str] | None = None,
    ) -> str:
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": summary[:255],
            "issuetype": {"name": issue_type},
        }
        if description:
            fields["description"] = text_to_adf(description)
        if labels:
            fields["labels"] = labels
        data = await self._post("/rest/api/3/issue", json={"fields": fields})
        key = data["key"]
        logger.info("item_created", key=key, issue_type=issue_type)
        return key

    async def add_labels(self, key: str, labels: list[str]) -> None:
        await self._put(
            f"/rest/api/3/issue/{key}",
            json={"update": {"labels": [{"add": label} for label in labels]}},
        )

    async def update_fields(self, key: str, fields: dict[str, Any]) -> None:
        await self._put(f"/rest/api/3/issue/{key}", json={"fields": fields})

    async def create_link(
        self, inward: str, outward: str, link_type: str = BLOCKS_LINK_TYPE
    ) -> None:
        """Link two tickets; with ``Blocks``, *inward* ends up blocked by *outward*."""
        await self._post(
            "/rest/api/3/issueLink",
            json={
                "type": {"name": link_type},
                "inwardIssue": {"key": inward},
                "outwardIssue": {"key": outward},
            },
        )

    # ------------------------------------------------------------------
    # Boards and sprints (Agile API)
    # ------------------------------------------------------------------

    async def board_id(self, project_key: str) -> int:
        if project_key in self._boards:
            return self._boards[project_key]
        data = await self._get("/rest/agile/1.0/board", params={"projectKeyOrId": project_key})
        boards = data.get("values") or []
        if not boards:
            raise TrackerError(f"No agile board found for project {project_key}")
        self._boards[project_key] = int(boards[0]["id"])
        return self._boards[project_key]

    async def sprints(self, board_id: int, state: str) -> list[Sprint]:
        found: list[Sprint] = []
        start = 0
        while True:
            data = await self._get(
                f"/rest/agile/1.0/board/{board_id}/sprint",
                params={"state": state, "startAt": start, "maxResults": 50},
            )
            values = data.get("values") or []
            found.extend(Sprint.from_api(v) for v in values)
            if data.get("isLast", True) or not values:
                return found
            start += len(values)

    async def active_sprint(self, board_id: int) -> Sprint | None:
        active = await self.sprints(board_id, "active")
        return active[0] if active else None

    async def find_sprint(self, board_id: int, name: str) -> Sprint | None:
        for sprint in await self.sprints(board_id, "active,future"):
            if sprint.name == name:
                return sprint
        return None

    async def closed_sprints(self, board_id: int, limit: int = 5) -> list[Sprint]:
        """The *limit* most recently closed sprints, oldest first."""
        closed = await self.sprints(board_id, "closed")
        return closed[-limit:] if limit else closed

    async def create_sprint(self, board_id: int, name: str) -> Sprint:
        data = await self._post(
            "/rest/agile/1.0/sprint", json={"name": name, "originBoardId": board_id}
        )
        sprint = Sprint.from_api(data)
        logger.info("sprint_created", sprint_id=sprint.id, name=name)
        return sprint

    async def start_sprint(self, sprint_id: int, days: int = 14) -> None:
        now = datetime.now(UTC)
        await self._post(
            f"/rest/agile/1.0/sprint/{sprint_id}",
            json={
                "state": "active",
                "startDate": now.isoformat(),
                "endDate": (now + timedelta(days=days)).isoformat(),
            },
        )
        logger.info("sprint_started", sprint_id=sprint_id)

    async def close_sprint(self, sprint_id: int) -> None:
        await self._post(f"/rest/agile/1.0/sprint/{sprint_id}", json={"state": "closed"})
        logger.info("sprint_closed", sprint_id=sprint_id)

    async def move_to_sprint(self, sprint_id: int, keys: list[str]) -> None:
        for i in range(0, len(keys), _MOVE_CHUNK):
            await self._post(
                f"/rest/agile/1.0/sprint/{sprint_id}/issue",
                json={"issues": keys[i : i + _MOVE_CHUNK]},
            )

    async def sprint_issues(self, sprint_id: int) -> list[WorkItem]:
        items: list[WorkItem] = []
        start = 0
        while True:
            data = await self._get(
                f"/rest/agile/1.0/sprint/{sprint_id}/issue",
                params={"startAt": start, "maxResults": 100, "fields": self._fields()},
            )
            issues = data.get("issues") or []
            items.extend(self._parse(issue) for issue in issues)
            start += len(issues)
            if not issues or start >= data.get("total", 0):
                return items

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        assert self._client is not None, "JiraClient must be used as an async context manager"
        await self._throttle.wait()
        try:
            resp = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise TrackerError(f"Jira {method} {path} failed: {exc}") from exc
        if resp.is_error:
            raise TrackerError(
                f"Jira {method} {path} → {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, json: dict[str, Any] | None = None) -> Any:
        return await self._request("POST", path, json=json)

    async def _put(self, path: str, json: dict[str, Any] | None = None) -> Any:
        return await self._request("PUT", path, json=json)
