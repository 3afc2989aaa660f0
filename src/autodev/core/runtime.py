"""
Wiring from configuration to live collaborators.

``ProjectRuntime`` owns the HTTP clients of one project for the duration
of a command and hands out the orchestrators built on them::

    async with ProjectRuntime(config, config.project("HIVE")) as rt:
        summary = await rt.dispatcher().run_next(auto_close=True)

One merge lock and one tracker throttle exist per runtime, so every
orchestrator created from the same runtime shares them.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from autodev.clients.agent import AgentRunner, ClaudeCodeAgent
from autodev.clients.confluence import ConfluenceReporter
from autodev.clients.git import Git
from autodev.clients.github import GitHubClient
from autodev.clients.tracker import JiraClient
from autodev.core.batch import BatchGrouper
from autodev.core.config import AutodevConfig, ProjectConfig
from autodev.core.dispatcher import Dispatcher
from autodev.core.exceptions import ConfigError
from autodev.core.integration import IntegrationPipeline
from autodev.core.merge import MergeLock
from autodev.core.planner import Planner
from autodev.core.sprint import SprintManager


class ProjectRuntime:
    def __init__(
        self,
        config: AutodevConfig,
        project: ProjectConfig,
        *,
        agent: AgentRunner | None = None,
        git: Git | None = None,
    ) -> None:
        self.config = config
        self.project = project
        self.tracker = JiraClient.from_config(config)
        self.git = git or Git(
            Path(project.repo_path), timeout=config.dispatch.git_timeout_seconds
        )
        self.agent = agent or ClaudeCodeAgent(
            config.agent.binary,
            timeout=config.agent.timeout_seconds,
            ask_timeout=config.agent.grouping_timeout_seconds,
        )
        self.lock = MergeLock(project.key)
        self._hosting: GitHubClient | None = None
        self._stack = AsyncExitStack()

    async def __aenter__(self) -> ProjectRuntime:
        await self._stack.enter_async_context(self.tracker)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self._stack.aclose()

    @property
    def hosting(self) -> GitHubClient:
        if self._hosting is None:
            raise ConfigError("GitHub client not opened; call open_hosting() first")
        return self._hosting

    async def open_hosting(self) -> GitHubClient:
        if self._hosting is None:
            token = self.config.github.token
            if token is None:
                raise ConfigError(
                    "No GitHub token configured. Set [github] token or AUTODEV_GITHUB_TOKEN."
                )
            client = GitHubClient(
                token.get_secret_value(), self.project.gh_repo, api_url=self.config.github.api_url
            )
            self._hosting = await self._stack.enter_async_context(client)
        return self._hosting

    def reporter(self) -> ConfluenceReporter | None:
        conf = self.config.confluence
        if not conf.enabled:
            return None
        return ConfluenceReporter(
            self.config.jira.base_url,
            self.config.jira.email,
            self.config.jira.api_token.get_secret_value(),
            space_id=conf.space_id,
            parent_page_id=conf.parent_page_id,
        )

    # Orchestrators -----------------------------------------------------

    async def pipeline(self) -> IntegrationPipeline:
        return IntegrationPipeline(
            tracker=self.tracker,
            hosting=await self.open_hosting(),
            lock=self.lock,
            done_transition=self.project.transitions.done,
            reporter=self.reporter(),
            merge_retries=self.config.dispatch.merge_retries,
        )

    async def sprints(self) -> SprintManager:
        return SprintManager(
            project=self.project,
            tracker=self.tracker,
            git=self.git,
            hosting=await self.open_hosting(),
        )

    async def dispatcher(self) -> Dispatcher:
        return Dispatcher(
            project=self.project,
            tracker=self.tracker,
            git=self.git,
            agent=self.agent,
            pipeline=await self.pipeline(),
            sprints=await self.sprints(),
            dispatch=self.config.dispatch,
        )

    async def batch(self) -> BatchGrouper:
        return BatchGrouper(
            project=self.project,
            tracker=self.tracker,
            git=self.git,
            agent=self.agent,
            pipeline=await self.pipeline(),
        )

    def planner(self) -> Planner:
        return Planner(
            project=self.project,
            agent=self.agent,
            git=self.git,
            tracker=self.tracker,
            concurrency=self.config.dispatch.max_parallel,
        )
