"""Domain models: work items, their blocking links, and session outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ItemStatus(StrEnum):
    OPEN = "open"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class LinkDirection(StrEnum):
    BLOCKS = "blocks"  # this item blocks the target
    BLOCKED_BY = "blocked_by"  # this item is blocked by the target


@dataclass(frozen=True)
class Link:
    direction: LinkDirection
    key: str
    status: ItemStatus
    summary: str = ""

    @property
    def resolved(self) -> bool:
        return self.status == ItemStatus.DONE


@dataclass(frozen=True)
class Comment:
    author: str
    body: str
    created: str = ""


@dataclass
class WorkItem:
    """
    Read-only snapshot of a tracker ticket.

    Refreshed from the tracker on every orchestration cycle; nothing in
    autodev mutates it.
    """

    key: str
    summary: str = ""
    status: ItemStatus = ItemStatus.OPEN
    issue_type: str = "Task"
    priority: str = "Medium"
    description: str = ""
    links: list[Link] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    epic_key: str | None = None
    epic_summary: str = ""
    sprint_id: int | None = None
    sprint_name: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    status_changed: datetime | None = None
    assignee: str = ""
    story_points: float | None = None
    container: bool = False  # grouping container (epic), never executed itself

    @property
    def project_key(self) -> str:
        return self.key.rsplit("-", 1)[0]

    @property
    def number(self) -> str:
        return self.key.rsplit("-", 1)[-1]

    @property
    def is_done(self) -> bool:
        return self.status == ItemStatus.DONE

    def blockers(self) -> list[Link]:
        return [link for link in self.links if link.direction == LinkDirection.BLOCKED_BY]

    def unresolved_blockers(self) -> list[Link]:
        return [link for link in self.blockers() if not link.resolved]

    def blocks(self, other: WorkItem) -> bool:
        """True if this item structurally blocks *other*, whichever side recorded the link."""
        if any(
            link.direction == LinkDirection.BLOCKS and link.key == other.key for link in self.links
        ):
            return True
        return any(
            link.direction == LinkDirection.BLOCKED_BY and link.key == self.key
            for link in other.links
        )


# ---------------------------------------------------------------------------
# Session outcome
# ---------------------------------------------------------------------------


class Outcome(StrEnum):
    SUCCESS = "success"
    ALREADY_DONE = "already_done"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True)
class EvaluationResult:
    """What a session produced. Derived from the working copy, never persisted."""

    outcome: Outcome
    modified_files: tuple[str, ...] = ()
    reason: str = ""
    summary: str = ""

    @classmethod
    def success(
        cls, modified_files: list[str] | tuple[str, ...], summary: str = ""
    ) -> EvaluationResult:
        return cls(Outcome.SUCCESS, modified_files=tuple(modified_files), summary=summary)

    @classmethod
    def already_done(cls, reason: str = "") -> EvaluationResult:
        return cls(Outcome.ALREADY_DONE, reason=reason)

    @classmethod
    def blocked(cls, reason: str) -> EvaluationResult:
        return cls(Outcome.BLOCKED, reason=reason)

    @classmethod
    def failed(cls, reason: str = "No changes produced by the agent") -> EvaluationResult:
        return cls(Outcome.FAILED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.ALREADY_DONE)
