"""Prompt text handed to the coding agent."""

from __future__ import annotations

import json
from collections.abc import Sequence

from autodev.core.config import ProjectConfig
from autodev.core.constants import ALREADY_DONE_MARKER, BLOCKED_MARKER
from autodev.core.models import LinkDirection, WorkItem

_NON_INTERACTIVE = (
    "You are running NON-INTERACTIVELY. You cannot ask questions. Act directly."
)


def _context(project: ProjectConfig) -> str:
    return project.prompt_context or f"the {project.key} project"


def _item_block(item: WorkItem, *, heading: str = "##") -> str:
    lines = [
        f"{heading} {item.key}: {item.summary}",
        "",
        f"- Type: {item.issue_type}",
        f"- Priority: {item.priority}",
    ]
    if item.epic_key:
        lines.append(f"- Epic: {item.epic_key} ({item.epic_summary})")
    if item.description:
        lines += ["", item.description]
    return "\n".join(lines)


def build_item_prompt(project: ProjectConfig, item: WorkItem) -> str:
    parts = [
        f"You are a senior developer working on {_context(project)}.",
        "",
        "## Ticket to implement",
        "",
        _item_block(item, heading="###"),
    ]

    if item.comments:
        parts += ["", "## Recent comments", ""]
        for c in item.comments:
            day = c.created[:10] if c.created else ""
            parts.append(f"**{c.author}** ({day}):\n{c.body}\n")

    related = [link for link in item.links if link.direction == LinkDirection.BLOCKS]
    if related:
        parts += ["", "## Related tickets", ""]
        parts += [f"- {link.key}: {link.summary} ({link.status})" for link in related]

    parts += [
        "",
        "## Instructions",
        "",
        _NON_INTERACTIVE,
        "",
        "1. You are at the repository root. Read CLAUDE.md for project context.",
        "2. Implement the ticket NOW by creating or editing the necessary files.",
        "3. Make reasonable decisions when the ticket is ambiguous; do not ask for clarification.",
        f"4. Commit your changes with messages of the form `feat({item.key}): description`.",
        "5. Do NOT push and do NOT open a pull request; autodev does that.",
        f"6. If the work already exists in the codebase, write `{ALREADY_DONE_MARKER}` at the "
        "repository root explaining where, and change nothing else.",
        f"7. If you truly cannot proceed (blocking error, critical architecture decision), write "
        f"`{BLOCKED_MARKER}` at the repository root with the reason and the possible options. "
        "Its content is posted on the ticket.",
    ]
    return "\n".join(parts)


def build_batch_prompt(project: ProjectConfig, items: Sequence[WorkItem]) -> str:
    parts = [
        f"You are a senior developer working on {_context(project)}.",
        "",
        f"## Tickets to implement ({len(items)})",
        "",
        "Implement them in the order given; later tickets may build on earlier ones.",
    ]
    for item in items:
        parts += ["", _item_block(item, heading="###")]
    keys = ", ".join(i.key for i in items)
    parts += [
        "",
        "## Instructions",
        "",
        _NON_INTERACTIVE,
        "",
        "1. You are at the repository root. Read CLAUDE.md for project context.",
        "2. Implement every ticket by creating or editing the necessary files.",
        "3. Make exactly ONE commit per ticket, with the message "
        "`feat(<TICKET-KEY>): description`, naming only that ticket's key.",
        f"   Keys in this batch: {keys}.",
        "4. If you cannot implement a ticket, make no commit for it and move on.",
        "5. Do NOT push and do NOT open a pull request; autodev does that.",
    ]
    return "\n".join(parts)


def build_grouping_prompt(project: ProjectConfig, items: Sequence[WorkItem]) -> str:
    tickets = [
        {
            "key": i.key,
            "summary": i.summary,
            "type": i.issue_type,
            "epic": i.epic_key,
            "description": i.description[:300],
            "blocks": [link.key for link in i.links if link.direction == LinkDirection.BLOCKS],
        }
        for i in items
    ]
    return "\n".join(
        [
            f"You are a technical lead planning work on {_context(project)}.",
            "",
            "Group the following tickets into batches that one developer can implement "
            "together in a single session on one branch. Put tickets that touch the same "
            "area of the code together; keep each group to at most 6 tickets; every ticket "
            "belongs to exactly one group.",
            "",
            "```json",
            json.dumps(tickets, indent=2, ensure_ascii=False),
            "```",
            "",
            "Answer with ONLY a JSON array, no prose, of the form:",
            '[{"name": "short group name", "reason": "why these belong together", '
            '"tickets": ["KEY-1", "KEY-2"]}]',
        ]
    )


def build_analyze_prompt(project: ProjectConfig, plan: str, tree: str, output: str) -> str:
    role = f"You are a senior software architect reviewing a plan for {_context(project)}."
    return f"""{role}

## Plan

{plan}

## Repository files

```
{tree}
```

## Instructions

{_NON_INTERACTIVE}

Analyze the plan and write `{output}` in exactly this format:

```markdown
# Plan analysis: {project.key}

## Clarifying questions

- [ ] Q1: <precise question about an ambiguity, an open choice or an uncovered edge case>

## Prerequisites

- [ ] P1: <something a human must prepare first: access, specs, decisions, assets>

## Risks

- R1: <technical risk and its potential impact>
```

Rules:
- Read CLAUDE.md to learn the project's conventions.
- Be precise and actionable.
- Do not create branches and do not commit.
- Write ONLY `{output}`."""


def build_sprints_prompt(
    project: ProjectConfig, plan: str, answers: str | None, output: str
) -> str:
    answers_block = f"\n## Answers to the analysis questions\n\n{answers}\n" if answers else ""
    role = f"You are a project lead splitting a plan into sprints for {_context(project)}."
    return f"""{role}

## Plan

{plan}
{answers_block}
## Instructions

{_NON_INTERACTIVE}

Split the plan into coherent sprints and write `{output}` in exactly this format:

```markdown
# Sprints: {project.key}

## Sprint 1 — <short title>

- **Scope**: <2-3 sentences>
- **Prerequisites met**: <P1, P2 or "none">
- **Depends on**: <nothing or Sprint N>
- **Size**: <S / M / L>
- **Themes**: <themes covered>

## Sprint 2 — <short title>
...
```

Rules:
- Group by theme and dependency, not by task type.
- One sprint is one shippable functional increment.
- Size S = 3-5 tasks, M = 5-10, L = 10-15.
- Do not create branches and do not commit.
- Write ONLY `{output}`."""


def build_tasks_prompt(
    project: ProjectConfig,
    plan: str,
    sprint_section: str,
    previous_sections: Sequence[str],
    answers: str | None,
    output: str,
) -> str:
    previous = ""
    if previous_sections:
        previous = "\n## Earlier sprints (already planned)\n\n" + "\n\n---\n\n".join(
            previous_sections
        )
    answers_block = f"\n## Answers to the analysis questions\n\n{answers}\n" if answers else ""
    role = f"You are a senior developer detailing the tasks of one sprint for {_context(project)}."
    return f"""{role}

## Overall plan

{plan}
{previous}
{answers_block}
## Sprint to detail

{sprint_section}

## Instructions

{_NON_INTERACTIVE}

Write the sprint's tasks as a JSON array to `{output}`:

```json
[
  {{
    "summary": "Short actionable title",
    "description": "Detailed technical description with acceptance criteria",
    "issueType": "Story | Task | Bug",
    "storyPoints": 1,
    "blockedBy": [],
    "labels": ["autodev-planned"],
    "component": "Backend | Frontend | Infrastructure | ..."
  }}
]
```

Rules:
- Each task is one unit of work implementable in a single agent session.
- Descriptions must be detailed enough to implement without questions.
- `blockedBy` holds 0-based indices of tasks in THIS sprint that must land first.
- Do not create branches and do not commit.
- Write ONLY `{output}`."""


def build_verify_prompt(
    project: ProjectConfig, done_tasks: str, plan: str | None, output: str
) -> str:
    plan_block = (
        f"\n## Implementation plan\n\nCompare the code with this plan:\n\n{plan}\n" if plan else ""
    )
    role = f"You are a senior technical auditor checking the consistency of {_context(project)}."
    return f"""{role}

## Completed tickets

{done_tasks}
{plan_block}
## Instructions

{_NON_INTERACTIVE}

1. Read CLAUDE.md to learn the project's conventions.
2. Run the build, test and lint commands the project provides; note PASS or FAIL.
3. Check that each ticket is really implemented, that tickets do not contradict each
   other, and that dependencies between tickets were respected.
4. Classify problems as CRITICAL (blocking bug, broken build, missing feature) or
   WARNING (minor inconsistency, dead code, convention drift).

Write `{output}` in exactly this format:

```markdown
# Verification report: {project.key}

## Summary
- OK: <N> tickets
- Problems: <N> tickets

## Build & Tests
- Build: PASS or FAIL
- Tests: PASS or FAIL
- Lint: PASS or FAIL

## Problems

### [CRITICAL] <short description>
- **Tickets**: KEY-1, KEY-2
- **Problem**: <detailed explanation>
- **Suggestion**: <what should be done>
- **Action**: TICKET_NEEDED

### [WARNING] <short description>
- **Tickets**: KEY-3
- **Problem**: <explanation>
- **Suggestion**: <suggested fix>
- **Action**: TICKET_NEEDED or MANUAL_CHECK

## Verified tickets
- KEY-1: <title>
```

Rules:
- Do not create branches, do not commit, do not push.
- Write ONLY `{output}`.
- Use TICKET_NEEDED only for problems that need a code change."""
