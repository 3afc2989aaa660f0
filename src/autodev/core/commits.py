"""
Commit message convention for per-ticket attribution.

Each ticket's work is committed as ``<type>(<KEY>): <description>``, e.g.
``feat(HIVE-42): add login form``.  A subject names exactly one ticket:
subjects without a key, or mentioning more than one key, are rejected so
a commit can never be credited to the wrong ticket.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_SUBJECT_RE = re.compile(
    r"^(?P<type>[a-z]+)\((?P<scope>[^)]*)\)!?:\s*(?P<description>\S.*)$", re.IGNORECASE
)
_KEY_RE = re.compile(r"\b([A-Z][A-Z0-9]*-\d+)\b", re.IGNORECASE)


@dataclass(frozen=True)
class CommitSubject:
    type: str
    key: str
    description: str


def format_commit_subject(key: str, description: str, commit_type: str = "feat") -> str:
    return f"{commit_type}({key}): {description.strip()}"


def parse_commit_subject(subject: str) -> CommitSubject | None:
    """Parse a subject line; None if it does not attribute to exactly one ticket."""
    m = _SUBJECT_RE.match(subject.strip())
    if not m:
        return None
    scope = m.group("scope").strip()
    if not _KEY_RE.fullmatch(scope):
        return None
    key = scope.upper()
    project = key.rsplit("-", 1)[0]
    # other tickets of the same project make the attribution ambiguous
    mentioned = {
        k.upper() for k in _KEY_RE.findall(subject) if k.upper().startswith(project + "-")
    }
    if mentioned != {key}:
        return None
    return CommitSubject(
        type=m.group("type").lower(), key=key, description=m.group("description").strip()
    )


def attribute_commits(keys: Iterable[str], log_lines: Iterable[str]) -> dict[str, list[str]]:
    """
    Map each ticket key to the short SHAs of its conventional commits.

    *log_lines* are ``<sha> <subject>`` lines as returned by
    :meth:`autodev.clients.git.Git.log_range`.  Keys without a matching
    commit map to an empty list.
    """
    wanted = {k.upper(): k for k in keys}
    found: dict[str, list[str]] = {k: [] for k in wanted.values()}
    for line in log_lines:
        sha, _, subject = line.strip().partition(" ")
        parsed = parse_commit_subject(subject)
        if parsed is not None and parsed.key in wanted:
            found[wanted[parsed.key]].append(sha)
    return found
