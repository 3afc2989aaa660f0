"""
Claude Code CLI integration.

Two calls are used:

- :meth:`ClaudeCodeAgent.run` drives a full non-interactive session in a
  working copy, streaming line-delimited JSON events
  (``--output-format stream-json``).  Lines that are not valid JSON are
  kept in the transcript and otherwise ignored.
- :meth:`ClaudeCodeAgent.ask` is a one-shot, single-turn question whose
  answer text is returned (used for batch grouping).

Besides its exit code and transcript, the agent talks back through marker
files in the working copy (see :mod:`autodev.core.markers`).
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog

from autodev.core.constants import AGENT_TIMEOUT_SECONDS, GROUPING_TIMEOUT_SECONDS
from autodev.core.exceptions import AgentError, AgentTimeoutError

logger = structlog.get_logger()

_STREAM_LIMIT = 32 * 1024 * 1024  # single stream-json events can be large
_PREVIEW_CHARS = 200


@dataclass
class AgentRun:
    """Raw outcome of one agent session."""

    exit_code: int = 0
    transcript: list[str] = field(default_factory=list)
    result_text: str = ""
    stderr: str = ""
    malformed_lines: int = 0
    tool_calls: int = 0

    @property
    def summary(self) -> str:
        return self.result_text[:500]


class AgentRunner(Protocol):
    async def run(self, prompt: str, cwd: Path, *, log: Any = None) -> AgentRun: ...

    async def ask(self, prompt: str, cwd: Path) -> str: ...


def parse_stream_line(line: str) -> dict[str, Any] | None:
    """Decode one stream-json line; None for blank, partial, or non-object lines."""
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def apply_event(run: AgentRun, event: dict[str, Any], log: Any = None) -> None:
    """Fold one decoded event into *run*, logging assistant activity."""
    log = log or logger
    kind = event.get("type")
    if kind == "assistant":
        content = (event.get("message") or {}).get("content") or []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                preview = block["text"][:_PREVIEW_CHARS].replace("\n", " ")
                log.debug("agent_text", preview=preview)
            elif block.get("type") == "tool_use":
                run.tool_calls += 1
                log.info("agent_tool", tool=block.get("name", "?"))
    elif kind == "result":
        result = event.get("result")
        run.result_text = result if isinstance(result, str) else json.dumps(event)


class ClaudeCodeAgent:
    """
    Spawn the ``claude`` CLI.

    The ``CLAUDECODE`` variable is removed from the child environment so
    that running autodev from inside a Claude Code session does not trip
    nested-session detection.
    """

    def __init__(
        self,
        binary: str = "claude",
        *,
        timeout: float = AGENT_TIMEOUT_SECONDS,
        ask_timeout: float = GROUPING_TIMEOUT_SECONDS,
        stream_limit: int = _STREAM_LIMIT,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self.ask_timeout = ask_timeout
        self.stream_limit = stream_limit

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.pop("CLAUDECODE", None)
        return env

    async def _spawn(self, args: list[str], cwd: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(cwd),
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except OSError as exc:
            raise AgentError(f"Failed to spawn {self.binary}: {exc}") from exc

    async def run(self, prompt: str, cwd: Path, *, log: Any = None) -> AgentRun:
        log = log or logger
        proc = await self._spawn(
            [
                "--dangerously-skip-permissions",
                "-p",
                prompt,
                "--output-format",
                "stream-json",
                "--verbose",
            ],
            cwd,
        )
        assert proc.stdout is not None and proc.stderr is not None
        run = AgentRun()
        log.info("agent_started", cwd=str(cwd), prompt_chars=len(prompt))

        async def _consume() -> None:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode(errors="replace").rstrip("\n")
                if not line.strip():
                    continue
                run.transcript.append(line)
                event = parse_stream_line(line)
                if event is None:
                    run.malformed_lines += 1
                    continue
                apply_event(run, event, log)

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            await asyncio.wait_for(asyncio.gather(_consume(), proc.wait()), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            stderr_task.cancel()
            raise AgentTimeoutError(
                f"{self.binary} did not finish within {self.timeout:.0f}s"
            ) from None
        except ValueError as exc:
            # a stream-json line longer than the reader limit
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            stderr_task.cancel()
            raise AgentError(f"Unreadable output from {self.binary}: {exc}") from exc

        run.stderr = (await stderr_task).decode(errors="replace")
        run.exit_code = proc.returncode if proc.returncode is not None else -1
        log.info(
            "agent_finished",
            exit_code=run.exit_code,
            events=len(run.transcript),
            malformed=run.malformed_lines,
            tool_calls=run.tool_calls,
        )
        if run.exit_code != 0 and not run.transcript:
            raise AgentError(f"{self.binary} exited with code {run.exit_code}: {run.stderr[:500]}")
        return run

    async def ask(self, prompt: str, cwd: Path) -> str:
        """Single-turn question; returns the answer text."""
        proc = await self._spawn(
            ["-p", prompt, "--output-format", "json", "--max-turns", "1"],
            cwd,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.ask_timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise AgentTimeoutError(
                f"{self.binary} did not answer within {self.ask_timeout:.0f}s"
            ) from None
        stdout = out.decode(errors="replace").strip()
        if proc.returncode != 0 and not stdout:
            raise AgentError(
                f"{self.binary} exited with code {proc.returncode}: "
                f"{err.decode(errors='replace')[:500]}"
            )
        event = parse_stream_line(stdout)
        if event is not None and isinstance(event.get("result"), str):
            return event["result"]
        return stdout
