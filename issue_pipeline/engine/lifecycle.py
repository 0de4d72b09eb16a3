"""
Issue lifecycle state machine.

The machine is a fixed transition table keyed by ``Trigger``. Each entry
names the states the trigger is accepted from, the state it leads to and the
timestamp it stamps. Nothing here performs I/O: the pipeline asks for a
guard, hands it to ``StateStore.apply`` so the check runs under the store's
exclusive lock, and writes the update this module builds.

State Diagram::

    created ──assign──> assigned ──request-review──> in-review ──approve──> approved
                                                       │   ▲                  │
                                                 reject│   │request-review    │complete-merge
                                                       ▼   │                  ▼
                                               changes-requested           merged

    close: any non-terminal state ──> closed

``merged`` and ``closed`` are terminal. Timestamps are written once, except
``review_requested`` and ``rejected``, which recur with each review round.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from issue_pipeline.engine.state_store import Guard
from issue_pipeline.enums import IssueType, LifecycleState, Trigger
from issue_pipeline.exceptions import PreconditionFailed
from issue_pipeline.models.domain import IssueRecord, branch_for

S = LifecycleState

RECURRING_TIMESTAMPS = frozenset({"review_requested", "rejected"})


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""

    trigger: Trigger
    sources: frozenset[LifecycleState]
    target: LifecycleState
    timestamp: str


TRANSITIONS: dict[Trigger, Transition] = {
    Trigger.ASSIGN: Transition(Trigger.ASSIGN, frozenset({S.CREATED}), S.ASSIGNED, "assigned"),
    Trigger.REQUEST_REVIEW: Transition(
        Trigger.REQUEST_REVIEW,
        # in-review is accepted so a replacement PR can supersede the first
        frozenset({S.ASSIGNED, S.CHANGES_REQUESTED, S.IN_REVIEW}),
        S.IN_REVIEW,
        "review_requested",
    ),
    Trigger.APPROVE: Transition(Trigger.APPROVE, frozenset({S.IN_REVIEW}), S.APPROVED, "approved"),
    Trigger.COMPLETE_MERGE: Transition(Trigger.COMPLETE_MERGE, frozenset({S.APPROVED}), S.MERGED, "merged"),
    Trigger.REJECT: Transition(Trigger.REJECT, frozenset({S.IN_REVIEW}), S.CHANGES_REQUESTED, "rejected"),
    Trigger.CLOSE: Transition(
        Trigger.CLOSE,
        frozenset(s for s in LifecycleState if not s.is_terminal),
        S.CLOSED,
        "closed",
    ),
}

# Which timestamp proves an issue reached a state; used for consistency checks.
STATE_TIMESTAMPS: dict[LifecycleState, str] = {
    S.CREATED: "created",
    S.ASSIGNED: "assigned",
    S.IN_REVIEW: "review_requested",
    S.CHANGES_REQUESTED: "rejected",
    S.APPROVED: "approved",
    S.MERGED: "merged",
    S.CLOSED: "closed",
}


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


def allowed_triggers(state: LifecycleState) -> list[Trigger]:
    """Triggers accepted from ``state``, in table order."""
    return [t.trigger for t in TRANSITIONS.values() if state in t.sources]


def check(trigger: Trigger, record: IssueRecord) -> Transition:
    """Validate that ``trigger`` may fire on ``record``.

    Raises:
        PreconditionFailed: If the record's state is not a source state
    """
    transition = TRANSITIONS[trigger]
    if record.state not in transition.sources:
        raise PreconditionFailed(
            trigger.value,
            expected=[s.value for s in transition.sources],
            actual=record.state.value,
            issue=record.number,
        )
    return transition


def guard(trigger: Trigger, number: int) -> Guard:
    """Build a ``StateStore.apply`` guard that re-checks ``trigger`` under lock.

    The pipeline validates once before calling collaborators; this second
    check catches a concurrent command that moved the issue in between.
    """

    def _guard(current: IssueRecord | None) -> None:
        if current is None:
            # Deleted between read and write: report as out of sequence
            transition = TRANSITIONS[trigger]
            raise PreconditionFailed(
                trigger.value, expected=[s.value for s in transition.sources], actual="missing", issue=number
            )
        check(trigger, current)

    return _guard


def creation_guard(number: int) -> Guard:
    """Guard for ``create``: the Tracker number must not already be tracked."""

    def _guard(current: IssueRecord | None) -> None:
        if current is not None:
            raise PreconditionFailed(
                Trigger.CREATE.value, expected=["untracked"], actual=current.state.value, issue=number
            )

    return _guard


def creation_fields(
    number: int,
    *,
    title: str,
    url: str,
    issue_type: IssueType,
    auto_merge: bool,
    project: str,
    now: str | None = None,
) -> dict[str, Any]:
    """Fields written when an issue enters the lifecycle.

    Branch name and auto-merge flag are fixed here for the issue's life.
    """
    return {
        "state": S.CREATED,
        "title": title,
        "url": url,
        "type": issue_type,
        "branch": branch_for(number),
        "auto_merge": auto_merge,
        "project": project,
        "created": now or utcnow(),
    }


def transition_fields(
    trigger: Trigger, record: IssueRecord, now: str | None = None, **fields: Any
) -> dict[str, Any]:
    """Build the ``apply`` update for a validated transition.

    Args:
        trigger: The step being applied
        record: Current record; used to keep write-once timestamps intact
        now: Timestamp to stamp, defaults to the current UTC time
        **fields: Extra fields the step records (worker, PR, reason)

    Returns:
        Mapping of field to value for ``StateStore.apply``
    """
    transition = TRANSITIONS[trigger]
    updates: dict[str, Any] = {"state": transition.target, **fields}

    stamp = transition.timestamp
    if stamp in RECURRING_TIMESTAMPS or getattr(record, stamp) is None:
        updates[stamp] = now or utcnow()
    return updates


def timestamps_consistent(record: IssueRecord) -> bool:
    """Check the terminal-state invariant between state and timestamps.

    ``merged`` is set exactly when the state is merged, ``closed`` exactly
    when the state is closed, and the current state's own timestamp is set.
    """
    if (record.merged is not None) != (record.state is S.MERGED):
        return False
    if (record.closed is not None) != (record.state is S.CLOSED):
        return False
    return getattr(record, STATE_TIMESTAMPS[record.state]) is not None
