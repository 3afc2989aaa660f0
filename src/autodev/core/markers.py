"""Marker files the agent leaves at the working-copy root.

``BLOCKED.md`` means the agent could not proceed (its content is the
reason); ``ALREADY_DONE.md`` means the ticket needed no change.  Reading
the markers deletes them so a later run never sees stale signals.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from autodev.core.constants import ALREADY_DONE_MARKER, BLOCKED_MARKER


@dataclass(frozen=True)
class Markers:
    blocked: str | None = None
    already_done: str | None = None


def _take(path: Path) -> str | None:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    path.unlink(missing_ok=True)
    return content


def collect_markers(workdir: Path) -> Markers:
    """Read and delete both markers."""
    return Markers(
        blocked=_take(workdir / BLOCKED_MARKER),
        already_done=_take(workdir / ALREADY_DONE_MARKER),
    )


def clear_markers(workdir: Path) -> None:
    for name in (BLOCKED_MARKER, ALREADY_DONE_MARKER):
        (workdir / name).unlink(missing_ok=True)
