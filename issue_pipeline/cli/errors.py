"""Translate pipeline errors into CLI messages and exit codes."""

import sys
from collections.abc import Iterator
from contextlib import contextmanager

import click
import structlog

from issue_pipeline.exceptions import EXIT_INTERRUPTED, CollaboratorFailure, PipelineError

log = structlog.get_logger(__name__)


@contextmanager
def cli_errors(command: str) -> Iterator[None]:
    """Print ``Error: ...`` on stderr and exit with the error's code.

    A ``CollaboratorFailure`` raised after the transition was committed also
    reports the state that was recorded, so the operator knows what to
    reconcile by hand.
    """
    event = command.replace("-", "_")
    try:
        yield
    except CollaboratorFailure as e:
        for delivery in e.deliveries:
            if not delivery.ok:
                click.echo(f"Warning: notification not delivered: {delivery.describe()}", err=True)
        click.echo(f"Error: {e.message}", err=True)
        if e.committed:
            click.echo(
                f"Note: the issue was already recorded as '{e.state}'. "
                "Check the external system and finish the step by hand or retry the next command.",
                err=True,
            )
        log.debug(f"{event}_collaborator_failure", exc_info=True)
        sys.exit(e.exit_code)
    except PipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{event}_unexpected", exc_info=True)
        sys.exit(1)
