"""autodev: run Jira tickets through Claude Code and land them on trunk via GitHub PRs."""

__version__ = "0.4.0"
