"""Exception hierarchy for the issue pipeline.

Every error a command can surface is a ``PipelineError``. Each subclass
carries the process exit code the CLI reports for it, so callers scripting
the ``pipeline`` command can tell usage errors apart from out-of-sequence
steps and from failures of external collaborators.

Exception Hierarchy:
    PipelineError (base)
    ├── ConfigurationError        exit 1
    ├── UsageError                exit 2
    ├── NotFoundError             exit 3
    ├── PreconditionFailed        exit 4
    ├── NoAvailableWorkers        exit 4
    ├── CollaboratorFailure       exit 5
    │   └── DraftTimeout
    └── StoreCorrupt              exit 6

Validation errors (usage, not found, precondition, no workers) are raised
before any mutation. ``CollaboratorFailure`` records whether the lifecycle
transition was already committed when the external call failed.

Example Usage:
    >>> from issue_pipeline.exceptions import PreconditionFailed
    >>> raise PreconditionFailed("approve", expected=["in-review"], actual="assigned")
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from issue_pipeline.models.domain import Delivery

EXIT_SUCCESS = 0
EXIT_INTERRUPTED = 130


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        exit_code: Process exit status reported by the CLI
    """

    exit_code = 1

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Project configuration is missing, unreadable or invalid.

    Examples:
        - Project file not found
        - Invalid YAML syntax
        - A command needs a value the project does not define
    """

    exit_code = 1


class UsageError(PipelineError):
    """Malformed command input. No state was touched."""

    exit_code = 2


class NotFoundError(PipelineError):
    """Referenced project, issue or worker does not exist. No state was touched."""

    exit_code = 3


class PreconditionFailed(PipelineError):
    """A transition was requested from an incompatible state.

    Attributes:
        trigger: The requested lifecycle step
        expected: States from which the step is allowed
        actual: The state the issue is actually in
    """

    exit_code = 4

    def __init__(self, trigger: str, expected: Iterable[str], actual: str, issue: int | None = None) -> None:
        """Initialize exception.

        Args:
            trigger: Name of the requested step (e.g. "approve")
            expected: States in which the step would have been accepted
            actual: Current state of the issue
            issue: Issue number, if known
        """
        self.trigger = trigger
        self.expected = sorted(expected)
        self.actual = actual
        self.issue = issue

        target = f"issue #{issue}" if issue is not None else "issue"
        super().__init__(
            f"Cannot {trigger} {target}: expected state {' or '.join(self.expected)}, " f"but it is {actual}"
        )


class NoAvailableWorkers(PipelineError):
    """Every worker in the roster is paused. No state was touched."""

    exit_code = 4


class StoreCorrupt(PipelineError):
    """The durable state could not be parsed.

    Fatal for the invocation. The store is never treated as empty when its
    backing file is unreadable.

    Attributes:
        path: Path of the corrupt state file, if file-backed
    """

    exit_code = 6

    def __init__(self, message: str, path: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            path: Location of the corrupt store
        """
        self.path = path
        full_message = f"{message} ({path})" if path else message
        super().__init__(full_message)


class CollaboratorFailure(PipelineError):
    """A Tracker, Board, Drafter or Deployer call failed.

    Attributes:
        collaborator: Which collaborator failed ("tracker", "board", ...)
        committed: True if the lifecycle transition had already been
            durably applied before the failing call. Operators then need to
            reconcile the external system by hand, or retry the next step.
        status_code: HTTP status or process exit code, if applicable
        state: Issue state at the time of failure, if known
        deliveries: Board side effects attempted before the failure
    """

    exit_code = 5

    def __init__(
        self,
        message: str,
        collaborator: str,
        committed: bool = False,
        status_code: int | None = None,
        state: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            collaborator: Name of the failing collaborator
            committed: Whether the transition was already committed
            status_code: HTTP status or exit code
            state: Issue state after the committed part of the command
        """
        self.collaborator = collaborator
        self.committed = committed
        self.status_code = status_code
        self.state = state
        self.deliveries: "list[Delivery]" = []

        full_message = f"{collaborator}: {message}"
        if status_code is not None:
            full_message = f"{full_message} (status {status_code})"
        super().__init__(full_message)

    def after_commit(self, state: str, deliveries: "Iterable[Delivery]" = ()) -> "CollaboratorFailure":
        """Mark this failure as having happened after a committed transition.

        Args:
            state: The issue state that was durably applied
            deliveries: Notifications already sent for the committed transition

        Returns:
            The same exception, for ``raise exc.after_commit(...)`` chaining
        """
        self.committed = True
        self.state = state
        self.deliveries.extend(deliveries)
        return self


class DraftTimeout(CollaboratorFailure):
    """The Drafter did not answer within its time box."""

    def __init__(self, timeout_seconds: float) -> None:
        """Initialize exception.

        Args:
            timeout_seconds: The time box that was exceeded
        """
        self.timeout_seconds = timeout_seconds
        super().__init__(f"draft timed out after {timeout_seconds}s", collaborator="drafter")
