"""In-memory stand-ins for git, the coding agent, GitHub and Jira."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from autodev.clients.agent import AgentRun
from autodev.clients.github import PullRequest
from autodev.clients.tracker import Sprint
from autodev.core.config import DispatchConfig, ProjectConfig
from autodev.core.exceptions import GitError, PullRequestError, TrackerError
from autodev.core.models import ItemStatus, Link, LinkDirection, WorkItem

# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------

_EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


def make_item(
    key: str,
    summary: str = "",
    *,
    status: ItemStatus = ItemStatus.OPEN,
    blocked_by: dict[str, ItemStatus] | None = None,
    blocks: list[str] | None = None,
    epic: str | None = None,
    age: int = 0,
    sprint: str | None = None,
    container: bool = False,
    **extra: Any,
) -> WorkItem:
    """*age* orders items: larger means created earlier."""
    links = [
        Link(LinkDirection.BLOCKED_BY, k, s) for k, s in (blocked_by or {}).items()
    ] + [Link(LinkDirection.BLOCKS, k, ItemStatus.OPEN) for k in blocks or []]
    return WorkItem(
        key=key,
        summary=summary or f"Ticket {key}",
        status=status,
        links=links,
        epic_key=epic,
        created=_EPOCH - timedelta(days=age),
        sprint_name=sprint,
        container=container,
        **extra,
    )


@pytest.fixture
def item() -> Callable[..., WorkItem]:
    return make_item


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


@dataclass
class GitState:
    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)
    branches: set[str] = field(default_factory=set)
    remote_branches: set[str] = field(default_factory=set)
    log_lines: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    diff: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    commit_total: int = 0
    fail: dict[str, int] = field(default_factory=dict)  # method -> remaining failures

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeGit:
    """Records every call; ``state.fail[name] = n`` makes the next n calls raise."""

    def __init__(self, path: Path, state: GitState | None = None, remote: str = "origin") -> None:
        self.path = Path(path)
        self.state = state or GitState()
        self.remote = remote
        self.timeout = 30.0

    def at(self, path: Path | str) -> FakeGit:
        return FakeGit(Path(path), self.state, self.remote)

    def _record(self, name: str, *args: Any) -> None:
        self.state.calls.append((name, args))
        if self.state.fail.get(name, 0) > 0:
            self.state.fail[name] -= 1
            raise GitError(f"git {name} failed", stderr="boom")

    async def current_branch(self) -> str:
        self._record("current_branch")
        return "main"

    async def checkout(self, branch: str) -> None:
        self._record("checkout", branch)

    async def create_branch(self, branch: str, start: str | None = None) -> None:
        self._record("create_branch", branch, start)
        self.state.branches.add(branch)

    async def branch_exists(self, branch: str) -> bool:
        self._record("branch_exists", branch)
        return branch in self.state.branches

    async def remote_branch_exists(self, branch: str) -> bool:
        self._record("remote_branch_exists", branch)
        return branch in self.state.remote_branches

    async def delete_branch(self, branch: str) -> None:
        self._record("delete_branch", branch)
        self.state.branches.discard(branch)

    async def delete_remote_branch(self, branch: str) -> None:
        self._record("delete_remote_branch", branch)
        self.state.remote_branches.discard(branch)

    async def fetch(self, branch: str | None = None) -> None:
        self._record("fetch", branch)

    async def pull(self, branch: str, *, rebase: bool = False) -> None:
        self._record("pull", branch, rebase)

    async def push(self, branch: str, *, force_with_lease: bool = False) -> None:
        self._record("push", branch, force_with_lease)
        self.state.remote_branches.add(branch)

    async def rebase(self, onto: str) -> None:
        self._record("rebase", onto)

    async def rebase_abort(self) -> None:
        self._record("rebase_abort")

    async def log_range(self, base: str, head: str = "HEAD") -> list[str]:
        self._record("log_range", base, head)
        return list(self.state.log_lines)

    async def diff_names(self, base: str) -> list[str]:
        self._record("diff_names", base)
        return list(self.state.diff)

    async def status_porcelain(self) -> list[str]:
        self._record("status_porcelain")
        return list(self.state.pending)

    async def ls_files(self, limit: int = 200) -> list[str]:
        self._record("ls_files", limit)
        return self.state.files[:limit]

    async def commit_count(self, ref: str = "HEAD") -> int:
        self._record("commit_count", ref)
        return self.state.commit_total

    async def add_all(self, *paths: str) -> None:
        self._record("add_all", *paths)

    async def commit(self, message: str) -> None:
        self._record("commit", message)
        self.state.log_lines.insert(0, f"c{len(self.state.log_lines):06d} {message}")
        self.state.diff = sorted(set(self.state.diff) | set(self.state.pending))
        self.state.pending = []

    async def worktree_add(self, path: Path, branch: str, start: str) -> None:
        self._record("worktree_add", path, branch, start)
        Path(path).mkdir(parents=True, exist_ok=True)
        self.state.branches.add(branch)

    async def worktree_remove(self, path: Path) -> None:
        self._record("worktree_remove", path)

    async def worktree_prune(self) -> None:
        self._record("worktree_prune")


@pytest.fixture
def git(tmp_path: Path) -> FakeGit:
    repo = tmp_path / "repo"
    repo.mkdir()
    return FakeGit(repo)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class FakeAgent:
    """``on_run(cwd, prompt)`` simulates what the agent leaves behind."""

    def __init__(
        self,
        on_run: Callable[[Path, str], None] | None = None,
        *,
        answer: str = "[]",
        result_text: str = "Implemented.",
    ) -> None:
        self.on_run = on_run
        self.answer = answer
        self.result_text = result_text
        self.prompts: list[str] = []
        self.cwds: list[Path] = []
        self.asked: list[str] = []

    async def run(self, prompt: str, cwd: Path, *, log: Any = None) -> AgentRun:
        self.prompts.append(prompt)
        self.cwds.append(Path(cwd))
        if self.on_run is not None:
            self.on_run(Path(cwd), prompt)
        return AgentRun(exit_code=0, result_text=self.result_text)

    async def ask(self, prompt: str, cwd: Path) -> str:
        self.asked.append(prompt)
        return self.answer


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class FakeHosting:
    def __init__(self, *, merge_failures: int = 0) -> None:
        self.merge_failures = merge_failures
        self.created: list[PullRequest] = []
        self.merged: list[tuple[int, str, bool]] = []
        self.labels: dict[int, list[str]] = {}
        self.merged_prs: list[PullRequest] = []
        self.open_prs: dict[str, PullRequest] = {}
        self._numbers = itertools.count(101)

    async def create_pr(
        self, title: str, body: str, head: str, base: str = "main", *, draft: bool = False
    ) -> PullRequest:
        n = next(self._numbers)
        pr = PullRequest(n, f"https://github.com/acme/hive/pull/{n}", head, title, base)
        self.created.append(pr)
        self.open_prs[head] = pr
        return pr

    async def find_open_pr(self, head: str, base: str | None = None) -> PullRequest | None:
        return self.open_prs.get(head)

    async def merge_pr(
        self, pr: PullRequest, merge_method: str = "squash", *, delete_branch: bool = True
    ) -> None:
        if self.merge_failures > 0:
            self.merge_failures -= 1
            raise PullRequestError("Pull Request is not mergeable", status_code=405)
        self.merged.append((pr.number, merge_method, delete_branch))
        self.open_prs.pop(pr.head, None)

    async def delete_branch(self, branch: str) -> None:
        pass

    async def add_labels(self, pr_number: int, labels: list[str]) -> None:
        self.labels.setdefault(pr_number, []).extend(labels)

    async def list_merged_prs(self, pattern: Any = None, limit: int = 200) -> list[PullRequest]:
        return list(self.merged_prs)


@pytest.fixture
def hosting() -> FakeHosting:
    return FakeHosting()


# ---------------------------------------------------------------------------
# Jira
# ---------------------------------------------------------------------------


_STATUS_AFTER = {
    "In Progress": ItemStatus.IN_PROGRESS,
    "Done": ItemStatus.DONE,
    "To Do": ItemStatus.OPEN,
}


class FakeTracker:
    """Dict-backed tracker; ``search_items`` returns ``search_results`` regardless of JQL."""

    base_url = "https://acme.atlassian.net"

    def __init__(self, items: list[WorkItem] | None = None) -> None:
        self.items: dict[str, WorkItem] = {i.key: i for i in items or []}
        self.search_results: list[WorkItem] | None = None
        self.queries: list[str] = []
        self.transitions: list[tuple[str, str]] = []
        self.comments: list[tuple[str, str]] = []
        self.labels: dict[str, list[str]] = {}
        self.fields: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.links: list[tuple[str, str, str]] = []
        self.sprints: dict[int, Sprint] = {}
        self.sprint_members: dict[int, list[str]] = {}
        self.started: list[int] = []
        self.closed: list[int] = []
        self.counts: dict[str, int] = {}
        self.fail_fetch: set[str] = set()
        self.fail_transition: set[str] = set()
        self._keys = itertools.count(900)
        self._sprint_ids = itertools.count(50)

    def browse_url(self, key: str) -> str:
        return f"{self.base_url}/browse/{key}"

    async def fetch_item(self, key: str) -> WorkItem:
        if key in self.fail_fetch or key not in self.items:
            raise TrackerError(f"GET /rest/api/3/issue/{key} -> 404", status_code=404)
        return self.items[key]

    async def search_items(self, jql: str, max_results: int = 50) -> list[WorkItem]:
        self.queries.append(jql)
        pool = self.search_results if self.search_results is not None else self.items.values()
        return list(pool)[:max_results]

    async def search_keys(self, jql: str, page_size: int = 100) -> list[str]:
        return [i.key for i in await self.search_items(jql, 10_000)]

    async def count(self, jql: str) -> int:
        self.queries.append(jql)
        return self.counts.get(jql, 0)

    async def transition(self, key: str, name: str) -> None:
        if key in self.fail_transition:
            raise TrackerError(f"No transition {name!r} for {key}")
        self.transitions.append((key, name))
        if key in self.items and name in _STATUS_AFTER:
            self.items[key].status = _STATUS_AFTER[name]

    async def comment(self, key: str, text: str) -> None:
        self.comments.append((key, text))

    async def create_item(
        self,
        project_key: str,
        summary: str,
        description: str = "",
        issue_type: str = "Task",
        labels: list[str] | None = None,
    ) -> str:
        key = f"{project_key}-{next(self._keys)}"
        self.created.append(
            {"key": key, "summary": summary, "description": description, "type": issue_type}
        )
        return key

    async def add_labels(self, key: str, labels: list[str]) -> None:
        self.labels.setdefault(key, []).extend(labels)

    async def update_fields(self, key: str, fields: dict[str, Any]) -> None:
        self.fields.setdefault(key, {}).update(fields)

    async def create_link(self, inward: str, outward: str, link_type: str = "Blocks") -> None:
        self.links.append((inward, outward, link_type))

    # sprints

    def add_sprint(self, name: str, state: str = "active", keys: list[str] | None = None) -> Sprint:
        sprint = Sprint(next(self._sprint_ids), name, state)
        self.sprints[sprint.id] = sprint
        self.sprint_members[sprint.id] = list(keys or [])
        return sprint

    async def board_id(self, project_key: str) -> int:
        return 7

    async def active_sprint(self, board_id: int) -> Sprint | None:
        return next((s for s in self.sprints.values() if s.state == "active"), None)

    async def find_sprint(self, board_id: int, name: str) -> Sprint | None:
        return next(
            (s for s in self.sprints.values() if s.name == name and s.state != "closed"), None
        )

    async def closed_sprints(self, board_id: int, limit: int = 5) -> list[Sprint]:
        closed = [s for s in self.sprints.values() if s.state == "closed"]
        return closed[-limit:]

    async def create_sprint(self, board_id: int, name: str) -> Sprint:
        return self.add_sprint(name, "future")

    async def start_sprint(self, sprint_id: int, days: int = 14) -> None:
        self.started.append(sprint_id)

    async def close_sprint(self, sprint_id: int) -> None:
        self.closed.append(sprint_id)

    async def move_to_sprint(self, sprint_id: int, keys: list[str]) -> None:
        for members in self.sprint_members.values():
            for key in keys:
                if key in members:
                    members.remove(key)
        self.sprint_members[sprint_id].extend(keys)

    async def sprint_issues(self, sprint_id: int) -> list[WorkItem]:
        return [self.items[k] for k in self.sprint_members.get(sprint_id, []) if k in self.items]


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture
def project(git: FakeGit) -> ProjectConfig:
    return ProjectConfig(key="HIVE", repo_path=git.path, gh_repo="acme/hive")


@pytest.fixture
def dispatch_cfg(tmp_path: Path) -> DispatchConfig:
    return DispatchConfig(cooldown_seconds=0, worktree_root=str(tmp_path / "worktrees"))
