"""autodev exception hierarchy."""

from __future__ import annotations

from autodev.core.constants import ExitCode


class AutodevError(Exception):
    """Base exception for all autodev errors."""

    exit_code: int = ExitCode.ERROR


class ConfigError(AutodevError):
    """Raised when the configuration is invalid or cannot be read."""

    exit_code = ExitCode.CONFIG_ERROR


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""


class TrackerError(AutodevError):
    """Raised when an issue tracker request fails."""

    exit_code = ExitCode.NETWORK_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitError(AutodevError):
    """Raised when a git command exits non-zero or times out."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class PullRequestError(AutodevError):
    """Raised when the code hosting platform rejects a PR operation."""

    exit_code = ExitCode.NETWORK_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgentError(AutodevError):
    """Raised when the coding agent cannot be spawned or produced nothing."""


class AgentTimeoutError(AgentError):
    """Raised when the coding agent runs past its timeout."""


class IntegrationConflictError(AutodevError):
    """Raised when a PR still cannot be merged after all rebase retries."""

    exit_code = ExitCode.CONFLICT


class GroupingError(AutodevError):
    """Raised when the agent's grouping answer holds no usable JSON array."""


class PlanStepError(AutodevError):
    """Raised when a planning step runs before its prerequisite artifact exists."""


class ContextIncompleteError(AutodevError):
    """Raised when the repository's autodev context files are still templates."""

    exit_code = ExitCode.CONTEXT_INCOMPLETE

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "Project context is incomplete. Fill in: "
            + ", ".join(f"autodev/{name}" for name in missing)
        )
        self.missing = missing
