"""autodev constants: filesystem layout, timeouts, and limits."""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from pathlib import Path

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    ENV_ERROR = 3
    NETWORK_ERROR = 4
    CONFLICT = 5
    CONTEXT_INCOMPLETE = 6


# ---------------------------------------------------------------------------
# Platform-specific config directory
# ---------------------------------------------------------------------------


def _default_data_dir() -> Path:
    """
    Return the platform-appropriate autodev data directory.

    macOS : ~/Library/Application Support/autodev
    Linux : ~/.config/autodev
    Other : ~/.autodev
    """
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "autodev"
    if sys.platform.startswith("linux"):
        xdg = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
        return xdg / "autodev"
    return Path.home() / ".autodev"


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "config.toml"
CONTEXT_DIRNAME = "autodev"  # per-repository context and planning artifacts
BLOCKED_MARKER = "BLOCKED.md"
ALREADY_DONE_MARKER = "ALREADY_DONE.md"
SPRINT_RECAP_DIR = Path("docs") / "sprints"

# ---------------------------------------------------------------------------
# Timeouts and limits
# ---------------------------------------------------------------------------

TRACKER_THROTTLE_SECONDS = 0.15  # min interval between tracker requests
HTTP_TIMEOUT_SECONDS = 30.0
AGENT_TIMEOUT_SECONDS = 600  # 10 minutes per agent run
GROUPING_TIMEOUT_SECONDS = 120  # one-shot grouping analysis
GIT_TIMEOUT_SECONDS = 30
DEFAULT_COOLDOWN_SECONDS = 15.0  # tracker search index convergence
MAX_PARALLEL = 4
MAX_NEXT_ATTEMPTS = 3  # --next without auto-close
MAX_CONSECUTIVE_FAILURES = 5  # --next with auto-close
MERGE_RETRIES = 2
COMMENT_LIMIT = 5  # most recent comments kept on a WorkItem
SLUG_MAX_LENGTH = 40
REASON_MAX_CHARS = 1000
SUMMARY_MAX_CHARS = 500

# ---------------------------------------------------------------------------
# Tracker conventions
# ---------------------------------------------------------------------------

PROCESSED_LABEL = "autodev-processed"
PLANNED_LABEL = "autodev-planned"
BLOCKS_LINK_TYPE = "Blocks"
COMMENT_PREFIX = "[autodev]"
VERIFY_SPRINT_NAME = "Autodev Acceptance"
