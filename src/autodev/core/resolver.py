"""
Dependency resolver: pick the work items that may start now.

Pure functions over a snapshot of candidates.  Selection is first-fit
greedy over the oldest-created-first ordering; it is not globally
optimal and ties are left in input order.

Multi-select mode (``limit > 1``) adds two collision-avoidance rules for
items that will run concurrently: no selected item may structurally
block another, and (unless disabled) no two selected items share an
epic.  Both are best-effort: concurrent sessions can still touch
overlapping files.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime

import structlog

from autodev.core.models import WorkItem

logger = structlog.get_logger()


def order_candidates(candidates: Iterable[WorkItem]) -> list[WorkItem]:
    """Oldest-created first; items without a creation time keep input order at the end."""
    items = list(candidates)
    dated = [i for i in items if i.created is not None]
    undated = [i for i in items if i.created is None]
    dated.sort(key=_created_key)
    return dated + undated


def _created_key(item: WorkItem) -> datetime:
    assert item.created is not None
    return item.created


def skip_reason(item: WorkItem, blocked_keys: Collection[str] = ()) -> str | None:
    """Why *item* cannot run on its own merits, or None if it can."""
    if item.container:
        return "container"
    if item.key in blocked_keys:
        return "failed_this_session"
    if item.is_done:
        return "done"
    blockers = item.unresolved_blockers()
    if blockers:
        return "blocked_by " + ", ".join(link.key for link in blockers)
    return None


def is_eligible(item: WorkItem, blocked_keys: Collection[str] = ()) -> bool:
    return skip_reason(item, blocked_keys) is None


def select_eligible(
    candidates: Iterable[WorkItem],
    blocked_keys: Collection[str] = (),
    limit: int | None = 1,
    *,
    skip_same_epic: bool = True,
) -> list[str]:
    """
    Return the keys of up to *limit* eligible candidates, oldest first.

    ``limit=None`` returns every eligible item without the concurrent
    collision rules (used to collect a batch pool).
    """
    selected: list[WorkItem] = []
    epics: set[str] = set()
    concurrent = limit is not None and limit > 1

    for item in order_candidates(candidates):
        if limit is not None and len(selected) >= limit:
            break

        reason = skip_reason(item, blocked_keys)
        if reason is not None:
            logger.debug("candidate_skipped", key=item.key, reason=reason)
            continue

        if concurrent:
            entangled = [s.key for s in selected if item.blocks(s) or s.blocks(item)]
            if entangled:
                logger.debug(
                    "candidate_skipped", key=item.key, reason="entangled", entangled_with=entangled
                )
                continue
            if skip_same_epic and item.epic_key and item.epic_key in epics:
                logger.debug(
                    "candidate_skipped", key=item.key, reason="same_epic", epic=item.epic_key
                )
                continue

        selected.append(item)
        if item.epic_key:
            epics.add(item.epic_key)

    return [item.key for item in selected]
