"""Confluence (REST v2) implementation reports.

Best-effort by contract: :meth:`ConfluenceReporter.publish` never raises,
it logs and returns None when anything goes wrong.
"""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from autodev.core.constants import HTTP_TIMEOUT_SECONDS, SUMMARY_MAX_CHARS
from autodev.core.models import EvaluationResult, WorkItem

logger = structlog.get_logger()

_PAGE_LINK_RE = re.compile(r"https?://[^\s]*\.atlassian\.net/wiki/[^\s)>\]]*")
_PAGE_ID_RE = re.compile(r"/pages/(\d+)")


def extract_page_link(description: str) -> str | None:
    m = _PAGE_LINK_RE.search(description or "")
    return m.group(0) if m else None


def build_report_body(item: WorkItem, result: EvaluationResult, pr_url: str) -> str:
    """Implementation report in Confluence storage format (XHTML)."""
    today = datetime.now(UTC).date().isoformat()
    files = "\n".join(f"<li><code>{html.escape(f)}</code></li>" for f in result.modified_files)
    summary = html.escape(result.summary[:SUMMARY_MAX_CHARS]) or "N/A"
    return (
        f"<h2>Implementation: {html.escape(item.key)}</h2>\n"
        f"<p><strong>Date</strong>: {today}<br/>\n"
        f'<strong>PR</strong>: <a href="{html.escape(pr_url)}">{html.escape(pr_url)}</a></p>\n'
        f"<h3>Modified files</h3>\n<ul>{files or '<li>None</li>'}</ul>\n"
        f"<h3>Summary</h3>\n<p>{summary}</p>"
    )


class ConfluenceReporter:
    """Append a report to the page linked from the ticket, or create a new page."""

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        space_id: str,
        parent_page_id: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.space_id = space_id
        self.parent_page_id = parent_page_id
        self._auth = httpx.BasicAuth(email, api_token)
        self._transport = transport

    async def publish(self, item: WorkItem, result: EvaluationResult, pr_url: str) -> str | None:
        body = build_report_body(item, result, pr_url)
        try:
            async with httpx.AsyncClient(
                base_url=f"{self.base_url}/wiki/api/v2",
                auth=self._auth,
                headers={"Accept": "application/json"},
                timeout=HTTP_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                link = extract_page_link(item.description)
                page = _PAGE_ID_RE.search(link) if link else None
                if link and page:
                    page_id = page.group(1)
                    await self._append(client, page_id, body)
                    logger.info("confluence_page_updated", key=item.key, url=link)
                    return link
                url = await self._create(client, item, body)
                logger.info("confluence_page_created", key=item.key, url=url)
                return url
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("confluence_report_failed", key=item.key, error=str(exc))
            return None

    async def _append(self, client: httpx.AsyncClient, page_id: str, body: str) -> None:
        resp = await client.get(f"/pages/{page_id}", params={"body-format": "storage"})
        resp.raise_for_status()
        page: dict[str, Any] = resp.json()
        current = ((page.get("body") or {}).get("storage") or {}).get("value", "")
        version = (page.get("version") or {}).get("number", 1)
        resp = await client.put(
            f"/pages/{page_id}",
            json={
                "id": page_id,
                "status": "current",
                "title": page.get("title", ""),
                "body": {"representation": "storage", "value": f"{current}\n\n{body}"},
                "version": {"number": version + 1},
            },
        )
        resp.raise_for_status()

    async def _create(self, client: httpx.AsyncClient, item: WorkItem, body: str) -> str:
        payload: dict[str, Any] = {
            "spaceId": self.space_id,
            "status": "current",
            "title": f"{item.key}: {item.summary}",
            "body": {"representation": "storage", "value": body},
        }
        if self.parent_page_id:
            payload["parentId"] = self.parent_page_id
        resp = await client.post("/pages", json=payload)
        resp.raise_for_status()
        page = resp.json()
        webui = (page.get("_links") or {}).get("webui")
        if webui:
            return f"{self.base_url}/wiki{webui}"
        return f"{self.base_url}/wiki/pages/{page['id']}"
