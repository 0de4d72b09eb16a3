"""CLI entry point for the issue pipeline."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
import structlog

from issue_pipeline.cli.errors import cli_errors
from issue_pipeline.cli.projects import (
    config_set_command,
    config_show_command,
    init_command,
    projects_command,
    setup_command,
)
from issue_pipeline.config.settings import ProjectSettings, load_project_settings, pipeline_home
from issue_pipeline.engine.pipeline import Pipeline
from issue_pipeline.exceptions import UsageError
from issue_pipeline.models.domain import CommandResult, IssueRecord, Worker
from issue_pipeline.providers.factory import open_pipeline
from issue_pipeline.utils.logging_config import bind_command_context, configure_logging

log = structlog.get_logger(__name__)

Operation = Callable[[Pipeline], Awaitable[CommandResult]]


@click.group()
@click.option(
    "--home",
    envvar="PIPELINE_HOME",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Configuration directory (default: ~/.config/issue-pipeline)",
)
@click.option("-p", "--project", envvar="PIPELINE_PROJECT", default=None, help="Project to act on")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (logs go to stderr)",
)
@click.option(
    "--log-format",
    default="json",
    type=click.Choice(["json", "console"]),
    help="Log line format",
)
@click.pass_context
def cli(ctx: click.Context, home: Path | None, project: str | None, log_level: str, log_format: str) -> None:
    """pipeline: drive issues from creation through review to merge."""
    configure_logging(log_level, log_format)  # type: ignore[arg-type]
    ctx.obj = {"home": pipeline_home(home), "project": project}


async def _run_operation(settings: ProjectSettings, home: Path, operation: Operation) -> CommandResult:
    async with open_pipeline(settings, home) as pipeline:
        return await operation(pipeline)


def _execute(ctx: click.Context, command: str, operation: Operation) -> CommandResult:
    """Resolve the project, run one pipeline command and report Board warnings.

    Exits with the error's exit code on failure.
    """
    with cli_errors(command):
        project = ctx.obj.get("project")
        if not project:
            raise UsageError("No project selected; pass -p <project> or set PIPELINE_PROJECT")

        bind_command_context(project=project, command=command)
        home = ctx.obj["home"]
        settings = load_project_settings(project, home)
        result = asyncio.run(_run_operation(settings, home, operation))
        log.info("command_completed", issue=result.issue, state=result.state.value if result.state else None)

    for warning in result.warnings:
        click.echo(f"Warning: notification not delivered: {warning}", err=True)
    return result


def _echo_result(result: CommandResult) -> None:
    click.echo(result.summary)
    if result.state is not None:
        click.echo(f"State: {result.state.value}")


def format_record(record: IssueRecord) -> list[str]:
    """Detail lines for ``status <issue>``."""
    lines = [record.summary_line()]
    auto_merge = "yes" if record.auto_merge else "no"
    lines.append(f"  type: {record.type.value}  branch: {record.branch}  auto-merge: {auto_merge}")
    if record.url:
        lines.append(f"  issue: {record.url}")
    if record.pr is not None:
        lines.append(f"  pr: #{record.pr} {record.pr_url or ''}".rstrip())
    if record.thread:
        lines.append(f"  thread: {record.thread}")
    if record.rejection_reason and record.state.value == "changes-requested":
        lines.append(f"  feedback: {record.rejection_reason}")
    if record.close_reason:
        lines.append(f"  close reason: {record.close_reason}")

    stamps = [
        f"{name}={value}"
        for name, value in (
            ("created", record.created),
            ("assigned", record.assigned),
            ("review_requested", record.review_requested),
            ("rejected", record.rejected),
            ("approved", record.approved),
            ("merged", record.merged),
            ("closed", record.closed),
        )
        if value
    ]
    if stamps:
        lines.append("  " + "  ".join(stamps))
    return lines


def format_worker(worker: Worker) -> str:
    flags = " (paused)" if worker.paused else ""
    if worker.is_default:
        flags += " (default)"
    last = worker.last_assigned or "never"
    return f"  {worker.display_name:<20} id={worker.id}  active={worker.active_count}  last assigned={last}{flags}"


# =============================================================================
# Lifecycle commands
# =============================================================================


@cli.command(name="create")
@click.argument("description", nargs=-1, required=True)
@click.option(
    "--auto-merge/--no-auto-merge",
    default=None,
    help="Merge immediately on approve (default: project setting)",
)
@click.pass_context
def create_command(ctx: click.Context, description: tuple[str, ...], auto_merge: bool | None) -> None:
    """Create an issue from a typed description, e.g. "bug: login fails"."""
    text = " ".join(description)
    result = _execute(ctx, "create", lambda p: p.create(text, auto_merge))
    _echo_result(result)
    if result.record is not None and result.record.url:
        click.echo(f"Issue: {result.record.url}")
    if result.data and not result.data.get("drafted"):
        click.echo("Note: issue text came from the template, not the drafting agent", err=True)


@cli.command(name="assign")
@click.argument("issue", type=int)
@click.pass_context
def assign_command(ctx: click.Context, issue: int) -> None:
    """Assign a created issue to the least-loaded available worker."""
    _echo_result(_execute(ctx, "assign", lambda p: p.assign(issue)))


@cli.command(name="request-review")
@click.argument("issue", type=int)
@click.option("--pr", type=int, default=None, help="Pull request number")
@click.pass_context
def request_review_command(ctx: click.Context, issue: int, pr: int | None) -> None:
    """Mark an issue's PR as ready for review."""
    _echo_result(_execute(ctx, "request-review", lambda p: p.request_review(issue, pr)))


@cli.command(name="approve")
@click.argument("issue", type=int)
@click.pass_context
def approve_command(ctx: click.Context, issue: int) -> None:
    """Approve the PR under review; merges it when auto-merge is on."""
    _echo_result(_execute(ctx, "approve", lambda p: p.approve(issue)))


@cli.command(name="complete-merge")
@click.argument("issue", type=int)
@click.pass_context
def complete_merge_command(ctx: click.Context, issue: int) -> None:
    """Merge an approved PR (manual-merge issues, or after a failed merge)."""
    _echo_result(_execute(ctx, "complete-merge", lambda p: p.complete_merge(issue)))


@cli.command(name="reject")
@click.argument("issue", type=int)
@click.argument("reason", nargs=-1)
@click.pass_context
def reject_command(ctx: click.Context, issue: int, reason: tuple[str, ...]) -> None:
    """Request changes on the PR under review, with feedback for the worker."""
    text = " ".join(reason)
    _echo_result(_execute(ctx, "reject", lambda p: p.reject(issue, text)))


@cli.command(name="close")
@click.argument("issue", type=int)
@click.argument("reason", nargs=-1)
@click.pass_context
def close_command(ctx: click.Context, issue: int, reason: tuple[str, ...]) -> None:
    """Close an issue without merging (duplicate, won't fix, ...)."""
    text = " ".join(reason)
    _echo_result(_execute(ctx, "close", lambda p: p.close(issue, text)))


# =============================================================================
# Reporting and worker commands
# =============================================================================


@cli.command(name="status")
@click.argument("issue", type=int, required=False)
@click.pass_context
def status_command(ctx: click.Context, issue: int | None) -> None:
    """Show one issue in detail, or every tracked issue."""
    result = _execute(ctx, "status", lambda p: p.status(issue))
    if isinstance(result.data, IssueRecord):
        for line in format_record(result.data):
            click.echo(line)
        return

    click.echo(result.summary)
    for record in result.data or []:
        click.echo(f"  {record.summary_line()}")


@cli.command(name="list")
@click.argument("scope", type=click.Choice(["open", "all"]), default="open")
@click.pass_context
def list_command(ctx: click.Context, scope: str) -> None:
    """List tracked issues; ``open`` hides merged and closed ones."""
    result = _execute(ctx, "list", lambda p: p.list_issues(scope))  # type: ignore[arg-type]
    click.echo(result.summary)
    for record in result.data or []:
        click.echo(f"  {record.summary_line()}")


@cli.command(name="list-workers")
@click.pass_context
def list_workers_command(ctx: click.Context) -> None:
    """Show the worker pool with current load."""
    result = _execute(ctx, "list-workers", lambda p: p.list_workers())
    click.echo(result.summary)
    for worker in result.data or []:
        click.echo(format_worker(worker))


@cli.command(name="pause-worker")
@click.argument("worker_id")
@click.pass_context
def pause_worker_command(ctx: click.Context, worker_id: str) -> None:
    """Stop assigning new issues to a worker."""
    click.echo(_execute(ctx, "pause-worker", lambda p: p.pause_worker(worker_id)).summary)


@cli.command(name="resume-worker")
@click.argument("worker_id")
@click.pass_context
def resume_worker_command(ctx: click.Context, worker_id: str) -> None:
    """Make a paused worker eligible for assignments again."""
    click.echo(_execute(ctx, "resume-worker", lambda p: p.resume_worker(worker_id)).summary)


# Short names used by agents and operators
cli.add_command(create_command, name="new")
cli.add_command(request_review_command, name="pr-ready")
cli.add_command(list_workers_command, name="workers")
cli.add_command(pause_worker_command, name="pause")
cli.add_command(resume_worker_command, name="resume")

# Project administration
cli.add_command(projects_command)
cli.add_command(init_command)
cli.add_command(config_set_command)
cli.add_command(config_show_command)
cli.add_command(setup_command)


if __name__ == "__main__":
    cli()
