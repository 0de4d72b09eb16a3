"""
Project administration commands.

These commands read and write project configuration files only; none of
them touches issue state or calls an external collaborator.

Commands:
    projects      List configured projects
    init          Write a commented project file
    config-set    Change one value in a project file
    config-show   Print the resolved configuration with secrets masked
    setup         Check that a project has everything the lifecycle needs
"""

import shutil
from pathlib import Path
from typing import Any

import click
import structlog
import yaml

from issue_pipeline.cli.errors import cli_errors
from issue_pipeline.config.settings import (
    ProjectSettings,
    is_set,
    list_projects,
    load_project_settings,
    project_file,
)
from issue_pipeline.exceptions import ConfigurationError, PipelineError, UsageError
from issue_pipeline.rendering.engine import TemplateEngine
from issue_pipeline.utils.logging_config import bind_command_context

log = structlog.get_logger(__name__)


def _home(ctx: click.Context) -> Path:
    return ctx.obj["home"]


@click.command(name="projects")
@click.pass_context
def projects_command(ctx: click.Context) -> None:
    """List configured projects with their repository and guild."""
    home = _home(ctx)
    with cli_errors("projects"):
        names = list_projects(home)
        if not names:
            click.echo(f"No projects configured under {home}. Create one with: pipeline init <name>")
            return

        for name in names:
            try:
                settings = load_project_settings(name, home)
            except PipelineError as e:
                click.echo(f"  {name:<20} (invalid configuration: {e.message})")
                continue
            repo = settings.tracker.repo or "-"
            guild = settings.board.guild_id or "-"
            click.echo(f"  {name:<20} repo={repo}  guild={guild}")


@click.command(name="init")
@click.argument("name")
@click.option("--repo", default=None, help="Tracker repository as owner/name")
@click.option("--guild", default=None, help="Board guild id")
@click.pass_context
def init_command(ctx: click.Context, name: str, repo: str | None, guild: str | None) -> None:
    """Create a project configuration file from the template.

    Refuses to overwrite an existing project.

    Examples:

        pipeline init webapp --repo acme/webapp
    """
    home = _home(ctx)
    with cli_errors("init"):
        bind_command_context(project=name, command="init")
        path = project_file(name, home)
        if path.exists():
            raise UsageError(f"Project '{name}' already exists at {path}")

        content = TemplateEngine().render("config/project.yaml.j2", {"name": name, "repo": repo, "guild": guild})
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content + "\n")
        log.info("project_initialized", path=str(path))

        click.echo(f"Created {path}")
        click.echo(f"Next: fill in the board section, then run: pipeline setup {name}")


def set_dotted(data: dict[str, Any], key: str, value: Any) -> None:
    """Set ``a.b.c`` in a nested mapping, creating intermediate mappings."""
    parts = [p for p in key.split(".") if p]
    if not parts:
        raise UsageError("Configuration key must not be empty")

    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if child is None:
            child = node[part] = {}
        if not isinstance(child, dict):
            raise UsageError(f"Cannot set '{key}': '{part}' is not a section")
        node = child
    node[parts[-1]] = value


@click.command(name="config-set")
@click.argument("name")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_command(ctx: click.Context, name: str, key: str, value: str) -> None:
    """Set KEY (dotted, e.g. board.forum_channel) to VALUE in a project file.

    VALUE is parsed as YAML, so ``true``, ``30`` and ``[a, b]`` keep their
    types. The file is re-validated and left unchanged if the result is
    invalid. Comments in the file are not preserved.
    """
    home = _home(ctx)
    with cli_errors("config-set"):
        bind_command_context(project=name, command="config-set")
        path = project_file(name, home)
        if not path.exists():
            raise UsageError(f"Project '{name}' does not exist; create it with: pipeline init {name}")

        original = path.read_text()
        try:
            data = yaml.safe_load(original) or {}
            parsed = yaml.safe_load(value)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {path} must be a YAML mapping")

        set_dotted(data, key, parsed)
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True))

        try:
            load_project_settings(name, home)
        except PipelineError:
            path.write_text(original)
            raise

        log.info("project_config_set", key=key)
        click.echo(f"{name}: {key} = {parsed!r}")


@click.command(name="config-show")
@click.argument("name")
@click.pass_context
def config_show_command(ctx: click.Context, name: str) -> None:
    """Print the resolved configuration of a project with secrets masked."""
    home = _home(ctx)
    with cli_errors("config-show"):
        bind_command_context(project=name, command="config-show")
        settings = load_project_settings(name, home)
        # JSON mode renders SecretStr as asterisks
        click.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False).rstrip())


def check_settings(settings: ProjectSettings) -> list[tuple[bool, str]]:
    """Offline readiness checks, one ``(ok, description)`` per requirement."""
    board = settings.board
    checks: list[tuple[bool, str]] = [
        (is_set(settings.tracker.repo), f"tracker.repo ({settings.tracker.repo or 'missing'})"),
        (is_set(settings.tracker.token), "tracker.token"),
        (is_set(board.forum_channel), "board.forum_channel"),
        (is_set(board.bot_token), "board.bot_token"),
        (is_set(board.forum_webhook), "board.forum_webhook"),
        (is_set(board.reviews_webhook), "board.reviews_webhook"),
    ]

    if settings.workers.roster:
        checks.append((True, f"workers.roster ({len(settings.workers.roster)} workers)"))
    else:
        checks.append((True, f"workers.roster empty, using default worker '{settings.workers.default_worker}'"))

    if settings.drafter.enabled:
        agent = settings.drafter.command[0] if settings.drafter.command else ""
        checks.append((bool(agent) and shutil.which(agent) is not None, f"drafter command '{agent}' on PATH"))

    if settings.deploy.working_dir:
        working_dir = Path(settings.deploy.working_dir).expanduser()
        checks.append((working_dir.is_dir(), f"deploy.working_dir ({working_dir})"))

    return checks


@click.command(name="setup")
@click.argument("name")
@click.pass_context
def setup_command(ctx: click.Context, name: str) -> None:
    """Validate a project's configuration without contacting any service."""
    home = _home(ctx)
    with cli_errors("setup"):
        bind_command_context(project=name, command="setup")
        settings = load_project_settings(name, home)
        checks = check_settings(settings)

        for ok, description in checks:
            click.echo(f"  {'OK  ' if ok else 'FAIL'} {description}")

        failed = sum(1 for ok, _ in checks if not ok)
        if failed:
            raise ConfigurationError(f"{failed} setup check(s) failed for project '{name}'")
        click.echo(f"Project '{name}' is ready.")
