"""autodev configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

from autodev.core.constants import (
    AGENT_TIMEOUT_SECONDS,
    CONFIG_FILENAME,
    DEFAULT_COOLDOWN_SECONDS,
    GIT_TIMEOUT_SECONDS,
    GROUPING_TIMEOUT_SECONDS,
    MAX_CONSECUTIVE_FAILURES,
    MAX_NEXT_ATTEMPTS,
    MAX_PARALLEL,
    MERGE_RETRIES,
    TRACKER_THROTTLE_SECONDS,
    _default_data_dir,
)
from autodev.core.exceptions import ConfigError, ConfigNotFoundError

_ITEM_KEY_RE = re.compile(r"^([A-Z][A-Z0-9]*)-(\d+)$")


def autodev_dir() -> Path:
    """
    Return the autodev data directory, creating it if needed.

    macOS : ~/Library/Application Support/autodev
    Linux : ~/.config/autodev  (or $XDG_CONFIG_HOME/autodev)
    Other : ~/.autodev
    """
    d = _default_data_dir()
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


def project_key_of(item_key: str) -> str:
    """Return the project part of a ticket key (``HIVE-42`` → ``HIVE``)."""
    m = _ITEM_KEY_RE.match(item_key)
    if not m:
        raise ConfigError(f"Invalid ticket key format: {item_key!r} (expected e.g. HIVE-42)")
    return m.group(1)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class JiraConfig(BaseModel):
    base_url: str
    email: str
    api_token: SecretStr
    throttle_seconds: float = TRACKER_THROTTLE_SECONDS

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("throttle_seconds")
    @classmethod
    def validate_throttle(cls, v: float) -> float:
        if v < 0:
            raise ValueError("throttle_seconds cannot be negative")
        return v


class GitHubConfig(BaseModel):
    token: SecretStr | None = None
    api_url: str = "https://api.github.com"


class ConfluenceConfig(BaseModel):
    space_id: str = ""
    parent_page_id: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.space_id)


class AgentConfig(BaseModel):
    binary: str = "claude"
    timeout_seconds: float = AGENT_TIMEOUT_SECONDS
    grouping_timeout_seconds: float = GROUPING_TIMEOUT_SECONDS


class DispatchConfig(BaseModel):
    max_parallel: int = MAX_PARALLEL
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    max_next_attempts: int = MAX_NEXT_ATTEMPTS
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    merge_retries: int = MERGE_RETRIES
    git_timeout_seconds: float = GIT_TIMEOUT_SECONDS
    skip_same_epic: bool = True
    worktree_root: str = "/tmp"

    @field_validator("max_parallel")
    @classmethod
    def validate_parallel(cls, v: int) -> int:
        if not (1 <= v <= MAX_PARALLEL):
            raise ValueError(f"max_parallel must be between 1 and {MAX_PARALLEL}")
        return v

    @field_validator("merge_retries", "max_next_attempts", "max_consecutive_failures")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class StatusMap(BaseModel):
    """Tracker status ids (or names) mapped onto the four item states."""

    todo: str = "To Do"
    in_progress: str = "In Progress"
    done: str = "Done"
    blocked: str | None = None


class TransitionMap(BaseModel):
    """Tracker transition names used to move items between states."""

    start: str = "In Progress"
    done: str = "Done"
    reopen: str = "To Do"


class ProjectConfig(BaseModel):
    key: str = ""
    repo_path: Path
    gh_repo: str
    trunk: str = "main"
    prompt_context: str = ""
    epic_type: str = "Epic"
    statuses: StatusMap = Field(default_factory=StatusMap)
    transitions: TransitionMap = Field(default_factory=TransitionMap)
    story_points_field: str = "customfield_10016"
    sprint_field: str = "customfield_10020"
    sprint_branches: bool = False
    plan_file: str = ""

    @field_validator("repo_path")
    @classmethod
    def expand_repo_path(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("gh_repo")
    @classmethod
    def validate_gh_repo(cls, v: str) -> str:
        if not re.fullmatch(r"[\w.-]+/[\w.-]+", v):
            raise ValueError(f"gh_repo must be 'owner/name', got {v!r}")
        return v

    @property
    def context_dir(self) -> Path:
        return self.repo_path / "autodev"


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class AutodevConfig(BaseModel):
    """Root autodev configuration model."""

    jira: JiraConfig
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    confluence: ConfluenceConfig = Field(default_factory=ConfluenceConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    projects: dict[str, ProjectConfig] = Field(default_factory=dict)

    _config_path: Path | None = None

    @field_validator("projects")
    @classmethod
    def stamp_project_keys(cls, v: dict[str, ProjectConfig]) -> dict[str, ProjectConfig]:
        for key, project in v.items():
            if not re.fullmatch(r"[A-Z][A-Z0-9]*", key):
                raise ValueError(f"Project key {key!r} must be upper-case letters/digits")
            project.key = key
        return v

    def project(self, key: str) -> ProjectConfig:
        try:
            return self.projects[key]
        except KeyError:
            known = ", ".join(sorted(self.projects)) or "none"
            raise ConfigError(
                f"Unknown project {key!r}. Add a [projects.{key}] section (configured: {known})."
            ) from None

    def project_for_item(self, item_key: str) -> ProjectConfig:
        return self.project(project_key_of(item_key))


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def config_file_path() -> Path:
    if env_path := os.environ.get("AUTODEV_CONFIG"):
        return Path(env_path)
    return autodev_dir() / CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> AutodevConfig:
    """
    Load AutodevConfig from a TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (AUTODEV_*, then bare JIRA_* / GITHUB_TOKEN)
      2. Config file (--config, $AUTODEV_CONFIG, or the platform data dir)
    """
    import tomllib

    cfg_path = Path(path) if path is not None else config_file_path()

    if not cfg_path.exists():
        raise ConfigNotFoundError(
            f"autodev is not configured. Run 'autodev config init' first.\n"
            f"(Config file not found: {cfg_path})"
        )

    try:
        with open(cfg_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc

    _apply_env_overrides(data)

    try:
        config = AutodevConfig.model_validate(data)
    except ValueError as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc

    config._config_path = cfg_path
    return config


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay AUTODEV_* (or bare JIRA_* / GITHUB_TOKEN) environment variables onto parsed TOML."""

    def _env(*names: str) -> str:
        for name in names:
            v = os.environ.get(name, "")
            if v:
                return v
        return ""

    # Jira
    if base := _env("AUTODEV_JIRA_BASE_URL", "JIRA_BASE_URL"):
        data.setdefault("jira", {})["base_url"] = base
    if email := _env("AUTODEV_JIRA_EMAIL", "JIRA_EMAIL"):
        data.setdefault("jira", {})["email"] = email
    if token := _env("AUTODEV_JIRA_API_TOKEN", "JIRA_API_TOKEN"):
        data.setdefault("jira", {})["api_token"] = token

    # GitHub
    if gh_token := _env("AUTODEV_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN"):
        data.setdefault("github", {})["token"] = gh_token

    # General
    if level := _env("AUTODEV_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    # Write atomically
    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except (OSError, TypeError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
