"""Enumerations for lifecycle states, issue types and message routing."""

from enum import Enum


class LifecycleState(str, Enum):
    """States an issue moves through from creation to merge or close."""

    CREATED = "created"
    ASSIGNED = "assigned"
    IN_REVIEW = "in-review"
    CHANGES_REQUESTED = "changes-requested"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Merged and closed issues accept no further transitions."""
        return self in (LifecycleState.MERGED, LifecycleState.CLOSED)

    @property
    def is_active(self) -> bool:
        """Check if a worker is still busy with an issue in this state."""
        return self in (
            LifecycleState.ASSIGNED,
            LifecycleState.IN_REVIEW,
            LifecycleState.CHANGES_REQUESTED,
        )


class Trigger(str, Enum):
    """Command-level steps that drive the lifecycle."""

    CREATE = "create"
    ASSIGN = "assign"
    REQUEST_REVIEW = "request-review"
    APPROVE = "approve"
    COMPLETE_MERGE = "complete-merge"
    REJECT = "reject"
    CLOSE = "close"

    def __str__(self) -> str:
        return self.value


class IssueType(str, Enum):
    """Kind of work, parsed from the ``type:`` prefix of a description."""

    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"

    def __str__(self) -> str:
        return self.value

    @property
    def tracker_label(self) -> str | None:
        """Label applied on the Tracker when the issue is created."""
        if self == IssueType.BUG:
            return "bug"
        elif self == IssueType.FEATURE:
            return "enhancement"
        return None


class SenderIdentity(str, Enum):
    """Identity a Board message is posted under.

    ACTION messages ask the recipient (a worker or reviewer agent) to do
    something. INFO messages only report and must never be acted upon, so a
    worker's own completion broadcast cannot re-trigger it.
    """

    ACTION = "action"
    INFO = "info"

    def __str__(self) -> str:
        return self.value


class Destination(str, Enum):
    """Board surfaces a notification can be delivered to."""

    THREAD = "thread"
    REVIEWS = "reviews"
    DEPLOY = "deploy"

    def __str__(self) -> str:
        return self.value
