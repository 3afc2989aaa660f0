"""
GitHub REST API client.

Thin httpx-based wrapper around the pull request calls autodev needs:
open a PR, squash-merge it and drop its branch, add labels, and list
merged PRs for sprint recaps.

All methods are async. Authentication is via Bearer token
(Personal Access Token or GitHub App installation token).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from autodev.core.constants import HTTP_TIMEOUT_SECONDS
from autodev.core.exceptions import PullRequestError

logger = structlog.get_logger()

_API = "https://api.github.com"
_ACCEPT = "application/vnd.github+json"
_VERSION = "2022-11-28"


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    head: str
    title: str = ""
    base: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PullRequest:
        return cls(
            number=int(data["number"]),
            url=data.get("html_url", ""),
            head=(data.get("head") or {}).get("ref", ""),
            title=data.get("title", ""),
            base=(data.get("base") or {}).get("ref", ""),
        )


class GitHubClient:
    """
    Async GitHub REST API client.

    Parameters
    ----------
    token:
        GitHub Personal Access Token (or installation token).
    repo:
        Repository in ``owner/repo`` format.
    api_url:
        API root (GitHub Enterprise installs differ).
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        token: str,
        repo: str,
        *,
        api_url: str = _API,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.repo = repo
        self._api_url = api_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": _ACCEPT,
            "X-GitHub-Api-Version": _VERSION,
        }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GitHubClient:
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=self._headers,
            timeout=HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Pull Requests
    # ------------------------------------------------------------------

    async def create_pr(
        self, title: str, body: str, head: str, base: str = "main", *, draft: bool = False
    ) -> PullRequest:
        data = await self._post(
            f"/repos/{self.repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )
        pr = PullRequest.from_api(data)
        logger.info("pr_created", number=pr.number, url=pr.url, head=head, base=base)
        return pr

    async def find_open_pr(self, head: str, base: str | None = None) -> PullRequest | None:
        """Return the open PR whose head is *head*, if any."""
        owner = self.repo.split("/", 1)[0]
        params: dict[str, Any] = {"state": "open", "head": f"{owner}:{head}"}
        if base:
            params["base"] = base
        data = await self._get(f"/repos/{self.repo}/pulls", params=params)
        return PullRequest.from_api(data[0]) if data else None

    async def merge_pr(
        self,
        pr: PullRequest,
        merge_method: str = "squash",
        *,
        delete_branch: bool = True,
    ) -> None:
        """
        Merge a pull request, then delete its head branch.

        Raises :class:`PullRequestError` when GitHub refuses the merge
        (405 not mergeable, 409 head moved, 422 invalid state).
        """
        await self._put(
            f"/repos/{self.repo}/pulls/{pr.number}/merge",
            json={"merge_method": merge_method},
        )
        logger.info("pr_merged", number=pr.number, method=merge_method)
        if delete_branch and pr.head:
            await self.delete_branch(pr.head)

    async def delete_branch(self, branch: str) -> None:
        """Delete a remote branch; a branch that is already gone is fine."""
        try:
            await self._delete(f"/repos/{self.repo}/git/refs/heads/{branch}")
        except PullRequestError as exc:
            if exc.status_code not in (404, 422):
                raise
            logger.debug("branch_already_deleted", branch=branch)

    async def add_labels(self, pr_number: int, labels: list[str]) -> None:
        await self._post(
            f"/repos/{self.repo}/issues/{pr_number}/labels", json={"labels": labels}
        )

    async def list_merged_prs(
        self, pattern: str | re.Pattern[str] | None = None, limit: int = 200
    ) -> list[PullRequest]:
        """Merged PRs (most recent first) whose title matches *pattern*."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        merged: list[PullRequest] = []
        page = 1
        scanned = 0
        while scanned < limit:
            data = await self._get(
                f"/repos/{self.repo}/pulls",
                params={
                    "state": "closed",
                    "sort": "updated",
                    "direction": "desc",
                    "per_page": 100,
                    "page": page,
                },
            )
            if not data:
                break
            for raw in data:
                scanned += 1
                if not raw.get("merged_at"):
                    continue
                pr = PullRequest.from_api(raw)
                if regex is None or regex.search(pr.title):
                    merged.append(pr)
            if len(data) < 100:
                break
            page += 1
        return merged

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
        assert self._client is not None, "GitHubClient must be used as an async context manager"
        try:
            resp = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise PullRequestError(f"GitHub {method} {path} failed: {exc}") from exc
        if resp.is_error:
            try:
                message = resp.json().get("message", resp.text)
            except ValueError:
                message = resp.text
            raise PullRequestError(
                f"GitHub {method} {path} → {resp.status_code}: {message}",
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

    async def _delete(self, path: str) -> None:
        await self._request("DELETE", path)
