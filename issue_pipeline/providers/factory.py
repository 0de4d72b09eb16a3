"""Build the pipeline and its collaborators from resolved project settings."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

from issue_pipeline.config.settings import ProjectSettings
from issue_pipeline.engine.pipeline import Pipeline
from issue_pipeline.engine.state_store import StateStore
from issue_pipeline.providers.agent_drafter import AgentDrafter
from issue_pipeline.providers.discord_board import DiscordBoard
from issue_pipeline.providers.github_tracker import GitHubTracker
from issue_pipeline.providers.shell_deployer import ShellDeployer
from issue_pipeline.rendering.engine import TemplateEngine

log = structlog.get_logger(__name__)


def create_store(settings: ProjectSettings, home: Path) -> StateStore:
    return StateStore(settings.state_path(home))


@asynccontextmanager
async def open_pipeline(settings: ProjectSettings, home: Path) -> AsyncIterator[Pipeline]:
    """Create a ``Pipeline`` wired to GitHub, Discord, the agent CLI and the shell.

    HTTP sessions opened during the command are closed on exit.
    """
    templates = TemplateEngine()
    tracker = GitHubTracker(settings.tracker)
    board = DiscordBoard(settings.board, settings.identities)
    drafter = AgentDrafter(settings.drafter, templates) if settings.drafter.enabled else None
    deployer = ShellDeployer(settings.deploy) if settings.deploy.steps else None

    log.debug("pipeline_created", project=settings.name, repo=settings.tracker.repo, drafter=drafter is not None)
    try:
        yield Pipeline(
            settings,
            create_store(settings, home),
            tracker=tracker,
            board=board,
            drafter=drafter,
            deployer=deployer,
            templates=templates,
        )
    finally:
        await board.close()
        await tracker.close()
