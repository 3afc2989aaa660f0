"""
Merge lock and conflict retry.

The local trunk checkout is a single shared mutable resource: checkout,
pull and the tracker's terminal transition cannot run for two PRs at
once.  :class:`MergeLock` hands out one :class:`MergeTicket` at a time,
in arrival order, so at most one integration is in flight no matter
how many sessions are producing PRs.

Use one lock per target repository.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import structlog

from autodev.clients.git import Git
from autodev.clients.github import PullRequest
from autodev.core.constants import MERGE_RETRIES
from autodev.core.exceptions import AutodevError, IntegrationConflictError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class MergeTicket:
    """Permission to integrate; valid only inside the lock that issued it."""

    serial: int
    holder: str = ""


class MergeLock:
    """Single-slot FIFO queue around integration work."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._lock = asyncio.Lock()  # waiters are woken in arrival order
        self._serials = itertools.count(1)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def ticket(self, holder: str = "") -> AsyncIterator[MergeTicket]:
        async with self._lock:
            ticket = MergeTicket(serial=next(self._serials), holder=holder)
            logger.debug("merge_slot_acquired", lock=self.name, serial=ticket.serial, holder=holder)
            try:
                yield ticket
            finally:
                logger.debug("merge_slot_released", lock=self.name, serial=ticket.serial)

    async def with_lock(
        self, fn: Callable[[MergeTicket], Awaitable[T]], holder: str = ""
    ) -> T:
        """Run ``fn(ticket)`` once every earlier caller has released the slot."""
        async with self.ticket(holder) as ticket:
            return await fn(ticket)


class MergeHost(Protocol):
    async def merge_pr(
        self, pr: PullRequest, merge_method: str = "squash", *, delete_branch: bool = True
    ) -> None: ...


async def merge_with_retry(
    pr: PullRequest,
    branch: str,
    *,
    hosting: MergeHost,
    git: Git,
    base: str = "main",
    max_retries: int = MERGE_RETRIES,
    log: Any = None,
) -> None:
    """
    Squash-merge *pr*, rebasing *branch* onto the remote base between attempts.

    At most *max_retries* merge attempts are made.  Between two attempts
    the branch is rebased onto ``origin/<base>`` and force-pushed with
    lease.  When the last attempt fails (or a rebase fails) any rebase in
    progress is aborted and :class:`IntegrationConflictError` is raised.
    """
    log = log or logger
    for attempt in range(1, max_retries + 1):
        try:
            await hosting.merge_pr(pr, "squash", delete_branch=True)
            return
        except AutodevError as exc:
            if attempt >= max_retries:
                await git.rebase_abort()
                raise IntegrationConflictError(
                    f"PR #{pr.number} could not be merged after {attempt} attempt(s): {exc}"
                ) from exc
            log.warning("merge_failed", pr=pr.number, attempt=attempt, error=str(exc))

        log.info("merge_rebase", branch=branch, onto=f"{git.remote}/{base}")
        try:
            await git.fetch(base)
            await git.checkout(branch)
            await git.rebase(f"{git.remote}/{base}")
            await git.push(branch, force_with_lease=True)
        except AutodevError as exc:
            await git.rebase_abort()
            raise IntegrationConflictError(f"Rebase of {branch} onto {base} failed: {exc}") from exc
